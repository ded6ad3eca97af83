from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from typing import Optional
from sqlalchemy.orm import Session

from storefront.api.deps import get_db, get_orchestrator
from storefront.api.schemas import (
    CreateOrderRequest, CreateOrderResponse, CreateShipmentRequest, OrderUpdate, WebhookPayload,
)
from storefront.core.auth import ensure_owner_or_admin, get_current_identity, require_admin
from storefront.core.config import settings
from storefront.core.errors import AuthError, CheckoutError, NotFoundError, UpstreamError, ValidationError
from storefront.core.logger import setup_logger
from storefront.db.models import Order
from storefront.services.checkout import CheckoutOrchestrator, OrderTotals, storefront_url
from storefront.services.payment_gateway import verify_callback
from storefront.services.shipment import ShipmentRejected
from storefront.store import order_store
from storefront.store.order_store import LineItemInput, OrderPatch

router = APIRouter()
logger = setup_logger(__name__)


def _money(value) -> str | None:
    return None if value is None else f"{value:.2f}"


def invoice_url(filename: str | None) -> str | None:
    if not filename:
        return None
    return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/invoices/{filename}"


def format_order(order: Order) -> dict:
    user = order.user
    address = order.address
    return {
        "id": order.id,
        "unique_order_id": order.unique_order_id,
        "user_id": order.user_id,
        "address_id": order.address_id,
        "subtotal": _money(order.subtotal),
        "tax": _money(order.tax),
        "total": _money(order.total),
        "shipping": _money(order.shipping),
        "discount": _money(order.discount),
        "grand_total": _money(order.grand_total),
        "payment_mode": order.payment_mode,
        "payment_status": order.payment_status,
        "status": order.status,
        "delivery_status": order.delivery_status,
        "transaction_id": order.transaction_id,
        "invoice_link": invoice_url(order.invoice_link),
        "checkout_state": order.checkout_state.value if order.checkout_state else None,
        "shipment_order_id": order.shipment_order_id,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
        "user": {"id": user.id, "name": user.name, "email": user.email, "mobile": user.mobile} if user else None,
        "address": {
            "id": address.id,
            "address1": address.address1,
            "address2": address.address2,
            "landmark": address.landmark,
            "city": address.city,
            "state": address.state,
            "pincode": address.pincode,
            "country": address.country,
        } if address else None,
        "products": [
            {
                "id": it.product.id,
                "name": it.product.name,
                "slug": it.product.slug,
                "description": it.product.description,
                "quantity": it.quantity,
                "discount": _money(it.discount),
                "size": {
                    "id": it.size.id,
                    "name": it.size.name,
                    "price": _money(it.size.price),
                    "discount_price": _money(it.size.discount_price),
                    "stock": it.size.stock,
                } if it.size else None,
            }
            for it in order.items
        ],
    }


def _page(orders, total: int, page: int, limit: int) -> dict:
    return {
        "success": True,
        "orders": [format_order(o) for o in orders],
        "pagination": {
            "totalOrders": total,
            "totalPages": (total + limit - 1) // limit,
            "currentPage": page,
            "limit": limit,
        },
    }


@router.post("", response_model=CreateOrderResponse)
def create_order(
    payload: CreateOrderRequest,
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    result = orchestrator.create_order(
        db,
        user_id=identity.get("user_id"),
        address_id=payload.address_id,
        payment_mode=payload.payment_mode,
        line_items=[
            LineItemInput(product_id=p.product_id, size_id=p.size_id, quantity=p.quantity, discount=p.discount)
            for p in payload.products
        ],
        totals=OrderTotals(
            subtotal=payload.subtotal,
            tax=payload.tax,
            total=payload.total,
            shipping=payload.shipping,
            discount=payload.discount,
            grand_total=payload.grand_total,
        ),
    )
    return CreateOrderResponse(redirectUrl=result.redirect_url, merchantOrderId=result.merchant_order_id)


@router.get("/status/{order_id}")
def payment_status(
    order_id: str,
    db: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    try:
        result = orchestrator.confirm_payment(db, order_id)
    except CheckoutError as e:
        page = settings.ORDER_PENDING_PATH if isinstance(e, UpstreamError) else settings.ORDER_FAILED_PATH
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "message": e.message, "navigate_to": storefront_url(page, order_id)},
        )
    return JSONResponse(
        status_code=result.status_code,
        content={"success": result.success, "message": result.message, "navigate_to": result.navigate_to},
    )


@router.post("/webhook")
def payment_webhook(
    payload: WebhookPayload,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    db: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    if not verify_callback(authorization, settings.PHONEPE_WEBHOOK_USERNAME, settings.PHONEPE_WEBHOOK_PASSWORD):
        raise AuthError("Invalid webhook signature.")
    logger.info(f"Payment webhook {payload.event} for {payload.payload.merchantOrderId}")
    # the webhook only names the order; state is re-read from the gateway
    result = orchestrator.confirm_payment(db, payload.payload.merchantOrderId)
    status_code = 500 if result.status_code >= 500 else 200
    return JSONResponse(status_code=status_code, content={"success": result.success, "message": result.message})


@router.post("/createShipment")
def create_shipment(
    payload: CreateShipmentRequest,
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    try:
        booking = orchestrator.create_shipment(db, payload.orderId)
    except ShipmentRejected as e:
        return JSONResponse(
            status_code=e.status_code,
            content={"success": False, "message": e.message, "error": e.raw},
        )
    return {
        "success": True,
        "message": "Shipment already booked." if booking.already_booked else "Shiprocket order created successfully.",
        "shipment_order_id": booking.carrier_order_id,
        "shipment_id": booking.shipment_id,
    }


@router.get("/user/{user_id}")
def orders_for_user(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    ensure_owner_or_admin(identity, user_id)
    orders, total = order_store.list_orders(db, page, limit, user_id=user_id)
    return _page(orders, total, page, limit)


@router.get("")
def all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    orders, total = order_store.list_orders(db, page, limit)
    return _page(orders, total, page, limit)


@router.post("/{order_id}/fulfill")
def fulfill_order(
    order_id: str,
    identity: dict = Depends(require_admin),
    db: Session = Depends(get_db),
    orchestrator: CheckoutOrchestrator = Depends(get_orchestrator),
):
    state = orchestrator.resume_fulfillment(db, order_id)
    return {"success": True, "message": "Fulfillment steps completed.", "checkout_state": state.value}


@router.get("/{order_id}")
def get_order(order_id: str, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = order_store.get_order_by_unique_id(db, order_id)
    if order is None:
        raise NotFoundError("Order not found.")
    ensure_owner_or_admin(identity, order.user_id)
    return {"success": True, "order": format_order(order)}


@router.put("/{order_pk}")
def update_order(
    order_pk: int,
    payload: OrderUpdate,
    identity: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    patch = OrderPatch(**payload.model_dump())
    if patch.is_empty():
        raise ValidationError("No fields provided for update.")
    if not order_store.apply_patch(db, order_pk, patch):
        raise NotFoundError("Order not found or no changes made.")
    logger.info(f"Order {order_pk} updated by admin {identity.get('user_id')}")
    return {"success": True, "message": "Order updated successfully."}
