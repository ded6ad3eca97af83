"""Order checkout and post-payment fulfillment.

``create_order`` runs in one store transaction that also spans the payment
intent call. Everything after the gateway reports COMPLETED is committed
step by step, with ``orders.checkout_state`` and the nullable markers
(``stock_adjusted_at``, ``delivery_status``, ``invoice_link``) recording
which steps are done, so ``resume_fulfillment`` can finish an interrupted
order without repeating anything.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.core.config import settings
from storefront.core.errors import (
    AuthError, CheckoutError, InternalError, NotFoundError, UpstreamError, ValidationError,
)
from storefront.core.logger import setup_logger
from storefront.db.models import CheckoutState, Order, PaymentStatus
from storefront.kafka.producer import emit
from storefront.services.payment_gateway import GatewayTimeout, PaymentGatewayError, STATE_COMPLETED, STATE_PENDING
from storefront.services.shipment import (
    ShipmentBooking, ShipmentRejected, build_shipment_payload, calculate_package_metrics,
)
from storefront.store import order_store
from storefront.store.order_store import LineDetail, LineItemInput

logger = setup_logger(__name__)

CENTS = Decimal("0.01")


def to_minor_units(amount) -> int:
    """Rupees to paise, truncating anything past the second decimal place."""
    return int((Decimal(str(amount)) * 100).to_integral_value(rounding=ROUND_DOWN))


def storefront_url(path_template: str, order_id: str) -> str:
    return settings.FRONTEND_BASE_URL.rstrip("/") + path_template.format(order_id=order_id)


@dataclass
class OrderTotals:
    subtotal: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    grand_total: Optional[Decimal] = None

    def derived_grand_total(self) -> Decimal:
        return (self.subtotal - self.discount + self.shipping + self.tax).quantize(CENTS)

    def validate(self):
        if self.grand_total is None or self.grand_total <= 0:
            raise ValidationError("Grand total must be a positive amount.")
        for name in ("subtotal", "tax", "total", "shipping", "discount"):
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} must not be negative.")

    def check_consistency(self, order_id: str = ""):
        derived = self.derived_grand_total()
        if derived != Decimal(self.grand_total).quantize(CENTS):
            logger.warning(
                f"Grand total mismatch for {order_id or 'new order'}: client sent {self.grand_total}, derived {derived}"
            )


@dataclass
class CheckoutResult:
    redirect_url: str
    merchant_order_id: str


@dataclass
class ConfirmationResult:
    success: bool
    state: CheckoutState
    message: str
    navigate_to: str
    status_code: int = 200


class CheckoutOrchestrator:
    def __init__(self, gateway, carrier, invoice_renderer: Callable[..., str], notifier):
        self.gateway = gateway
        self.carrier = carrier
        self.invoice_renderer = invoice_renderer
        self.notifier = notifier

    # --- create -----------------------------------------------------------------

    def _validate_create(self, db: Session, user_id, address_id, line_items: List[LineItemInput], totals: OrderTotals):
        if user_id is None:
            raise AuthError("Authentication failed: User ID not found.")
        if not address_id:
            raise ValidationError("Address ID is required.")
        if not line_items:
            raise ValidationError("Order must contain at least one product.")
        totals.validate()
        for it in line_items:
            if it.quantity is None or it.quantity <= 0:
                raise ValidationError("Quantity must be a positive integer.")
            if it.discount is not None and it.discount < 0:
                raise ValidationError("Discount must not be negative.")

        if order_store.address_for_user(db, address_id, user_id) is None:
            raise ValidationError("Invalid address for this user.")
        sizes = order_store.sizes_by_id(db, [it.size_id for it in line_items])
        for it in line_items:
            size = sizes.get(it.size_id)
            if size is None or size.product_id != it.product_id:
                raise ValidationError(f"Size {it.size_id} does not belong to product {it.product_id}.")

    def create_order(
        self,
        db: Session,
        user_id: Optional[int],
        address_id: Optional[int],
        payment_mode: str,
        line_items: List[LineItemInput],
        totals: OrderTotals,
    ) -> CheckoutResult:
        self._validate_create(db, user_id, address_id, line_items, totals)
        totals.check_consistency()

        try:
            with order_store.order_transaction(db):
                order = order_store.insert_order(
                    db,
                    user_id=user_id,
                    address_id=address_id,
                    payment_mode=payment_mode or "PREPAID",
                    subtotal=totals.subtotal,
                    tax=totals.tax,
                    total=totals.total,
                    shipping=totals.shipping,
                    discount=totals.discount,
                    grand_total=totals.grand_total,
                )
                order_store.insert_line_items(db, order.id, line_items)
                unique_order_id, grand_total = order_store.read_checkout_totals(db, order.id)
                intent = self._initiate_payment(unique_order_id, grand_total)
                order.checkout_state = CheckoutState.PAYMENT_INITIATED
        except CheckoutError:
            raise
        except SQLAlchemyError as e:
            logger.exception(f"Order transaction failed: {e}")
            raise InternalError("Failed to place the order. Please retry with a fresh order.")

        logger.info(f"Order {unique_order_id} created, payment initiated for {grand_total}")
        emit("order.created", unique_order_id, {"user_id": user_id, "grand_total": str(grand_total)})
        return CheckoutResult(redirect_url=intent.redirect_url, merchant_order_id=unique_order_id)

    def _initiate_payment(self, unique_order_id: str, grand_total: Decimal):
        amount = to_minor_units(grand_total)
        redirect = storefront_url(settings.PAYMENT_REDIRECT_PATH, unique_order_id)
        try:
            intent = self.gateway.create_intent(unique_order_id, amount, redirect)
        except GatewayTimeout:
            raise UpstreamError("Payment gateway timed out. Please check your orders before retrying.")
        except PaymentGatewayError as e:
            logger.error(f"Payment initiation failed for {unique_order_id}: {e}")
            raise UpstreamError("Failed to initiate payment.")
        if intent is None or not intent.redirect_url:
            logger.error(f"Payment gateway returned no redirect for {unique_order_id}")
            raise UpstreamError("Failed to initiate payment.")
        return intent

    # --- confirm ----------------------------------------------------------------

    def _find_order(self, db: Session, merchant_order_id: Optional[str]) -> Order:
        if not merchant_order_id:
            raise ValidationError("Order ID is required.")
        order = order_store.get_order_by_unique_id(db, merchant_order_id)
        if order is None:
            raise NotFoundError("Order not found.")
        return order

    def _paid(self, merchant_order_id: str, message: str, state=CheckoutState.PAYMENT_CONFIRMED) -> ConfirmationResult:
        return ConfirmationResult(
            success=True,
            state=state,
            message=message,
            navigate_to=storefront_url(settings.ORDER_SUCCESS_PATH, merchant_order_id),
        )

    def confirm_payment(self, db: Session, merchant_order_id: Optional[str]) -> ConfirmationResult:
        order = self._find_order(db, merchant_order_id)
        uid = order.unique_order_id
        if order.payment_status == PaymentStatus.PAID.value:
            return self._paid(uid, "Payment already confirmed.", CheckoutState(order.checkout_state))

        try:
            status = self.gateway.get_status(uid)
        except PaymentGatewayError as e:
            logger.error(f"Payment status check failed for {uid}: {e}")
            raise UpstreamError("Could not verify the payment right now. Please check your order status later.")

        if status.state == STATE_PENDING:
            logger.info(f"Payment pending for {uid}")
            return ConfirmationResult(
                success=False,
                state=CheckoutState.PAYMENT_INITIATED,
                message="Payment is pending. We will update your order once it completes.",
                navigate_to=storefront_url(settings.ORDER_PENDING_PATH, uid),
            )
        if status.state != STATE_COMPLETED:
            logger.info(f"Payment for {uid} ended in state {status.state or 'UNKNOWN'}")
            return ConfirmationResult(
                success=False,
                state=CheckoutState.PAYMENT_FAILED,
                message="Payment failed.",
                navigate_to=storefront_url(settings.ORDER_FAILED_PATH, uid),
                status_code=400,
            )

        order_pk = order.id
        if not order_store.claim_payment(db, order_pk, status.transaction_id):
            logger.info(f"Payment for {uid} was already confirmed by another request")
            return self._paid(uid, "Payment already confirmed.")
        logger.info(f"Payment confirmed for {uid}, transaction {status.transaction_id}")
        emit("order.paid", uid, {"transaction_id": status.transaction_id})

        try:
            state = self._run_fulfillment(db, order_pk)
        except Exception as e:
            db.rollback()
            logger.exception(f"Fulfillment interrupted for {uid}: {e}")
            return ConfirmationResult(
                success=False,
                state=CheckoutState.PROCESSING_ERROR,
                message=(
                    "Your payment was received, but we could not finish processing the order. "
                    "Our team will complete it; no further payment is needed."
                ),
                navigate_to=storefront_url(settings.ORDER_SUCCESS_PATH, uid),
                status_code=500,
            )
        return self._paid(uid, "Payment successful. Your order is being processed.", state)

    # --- fulfillment steps ------------------------------------------------------

    def _run_fulfillment(self, db: Session, order_pk: int) -> CheckoutState:
        """Run every fulfillment step whose marker is still empty, in order."""
        order = order_store.get_order(db, order_pk)
        lines = order_store.load_line_details(db, order_pk)
        if order.stock_adjusted_at is None:
            self._adjust_stock(db, order, lines)
        if order.delivery_status is None:
            self._book_shipment(db, order, lines)
        if order.invoice_link is None:
            invoice_path = self._issue_invoice(db, order, lines)
            self._send_emails(order, lines, invoice_path)
        return self._close_out(db, order)

    def _adjust_stock(self, db: Session, order: Order, lines: List[LineDetail]):
        uid = order.unique_order_id
        if order_store.adjust_stock_once(db, order.id, lines):
            logger.info(f"Stock adjusted for {uid}")
        else:
            logger.info(f"Stock for {uid} was already adjusted")

    def _book_shipment(self, db: Session, order: Order, lines: List[LineDetail]) -> Optional[ShipmentBooking]:
        uid = order.unique_order_id
        metrics = calculate_package_metrics(lines)
        payload = build_shipment_payload(order, order.user, order.address, lines, metrics, settings.SR_PICKUP_LOCATION)
        booking = self.carrier.book_shipment(payload)
        if booking is not None and booking.is_new:
            order_store.record_shipment(db, order.id, booking.status, booking.carrier_order_id)
            emit("shipping.booked", uid, {"carrier_order_id": booking.carrier_order_id, "shipment_id": booking.shipment_id})
            logger.info(f"Shipment booked for {uid}: {booking.carrier_order_id}")
        else:
            logger.warning(f"Shipment not booked for {uid}: {booking.raw if booking else 'carrier unreachable'}")
        return booking

    def _issue_invoice(self, db: Session, order: Order, lines: List[LineDetail]) -> str:
        path = self.invoice_renderer(order, lines, order.user, order.address)
        order_store.record_invoice(db, order.id, os.path.basename(path))
        return path

    def _send_emails(self, order: Order, lines: List[LineDetail], invoice_path: str):
        try:
            sent = self.notifier.notify_order_paid(order, order.user, order.address, lines, invoice_path)
        except Exception as e:
            logger.exception(f"Order emails failed for {order.unique_order_id}: {e}")
            return
        if not sent:
            logger.warning(f"Customer email not delivered for {order.unique_order_id}")

    def _close_out(self, db: Session, order: Order) -> CheckoutState:
        if order.stock_adjusted_at and order.delivery_status and order.invoice_link:
            order_store.set_checkout_state(db, order.id, CheckoutState.FULFILLED)
            logger.info(f"Order {order.unique_order_id} fulfilled")
            return CheckoutState.FULFILLED
        return CheckoutState(order.checkout_state)

    # --- standalone operations --------------------------------------------------

    def create_shipment(self, db: Session, merchant_order_id: Optional[str]) -> ShipmentBooking:
        order = self._find_order(db, merchant_order_id)
        if order.payment_status != PaymentStatus.PAID.value:
            raise ValidationError("Order is not paid. Cannot create shipment.")
        uid = order.unique_order_id
        if order.delivery_status is not None:
            logger.info(f"Shipment for {uid} already booked: {order.shipment_order_id}")
            return ShipmentBooking(
                status=order.delivery_status,
                carrier_order_id=order.shipment_order_id,
                already_booked=True,
            )
        lines = order_store.load_line_details(db, order.id)
        booking = self._book_shipment(db, order, lines)
        if booking is None:
            raise ShipmentRejected("Failed to create Shiprocket order.")
        if not booking.is_new:
            raise ShipmentRejected("Shiprocket did not accept the order.", raw=booking.raw)
        self._close_out(db, order)
        return booking

    def resume_fulfillment(self, db: Session, merchant_order_id: Optional[str]) -> CheckoutState:
        order = self._find_order(db, merchant_order_id)
        if order.payment_status != PaymentStatus.PAID.value:
            raise ValidationError("Order is not paid. Nothing to fulfill.")
        uid = order.unique_order_id
        try:
            return self._run_fulfillment(db, order.id)
        except Exception as e:
            db.rollback()
            logger.exception(f"Fulfillment resume failed for {uid}: {e}")
            raise InternalError("Fulfillment could not be completed. Try again later.")
