"""Transactional persistence for orders, their line items and size stock.

CreateOrder runs inside :func:`order_transaction`. After payment each
fulfillment step commits on its own, together with the marker that
records it, so an interrupted order can be resumed step by step.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import bindparam, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from storefront.core.errors import InternalError
from storefront.core.logger import setup_logger
from storefront.db.models import (
    Address, CheckoutState, Order, OrderProduct, OrderStatus, PaymentStatus, Product, Size,
)
from storefront.services.order_ids import generate_unique_order_id

logger = setup_logger(__name__)

ORDER_ID_ATTEMPTS = 3
PATCH_FIELDS = ("status", "payment_status", "delivery_status", "transaction_id", "invoice_link")

_orders = Order.__table__
_sizes = Size.__table__


@dataclass
class LineItemInput:
    product_id: int
    size_id: int
    quantity: int
    discount: Decimal = Decimal("0")


@dataclass
class LineDetail:
    """An order line joined with its product and size rows."""
    product_id: int
    size_id: int
    name: str
    sku: str
    size_name: str
    quantity: int
    price: Decimal
    discount: Decimal = Decimal("0")
    tax_rate: Decimal = Decimal("0")
    length: Decimal = Decimal("0")
    width: Decimal = Decimal("0")
    height: Decimal = Decimal("0")
    weight: Decimal = Decimal("0")

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity - self.discount


@dataclass
class OrderPatch:
    status: Optional[str] = None
    payment_status: Optional[str] = None
    delivery_status: Optional[str] = None
    transaction_id: Optional[str] = None
    invoice_link: Optional[str] = None

    def is_empty(self) -> bool:
        return all(getattr(self, name) in (None, "") for name in PATCH_FIELDS)

    def params(self) -> dict:
        # empty strings leave the column untouched, as None does
        return {f"new_{name}": (getattr(self, name) or None) for name in PATCH_FIELDS}


_PATCH_STMT = (
    _orders.update()
    .where(_orders.c.id == bindparam("target_id"))
    .values({
        name: func.coalesce(bindparam(f"new_{name}", type_=_orders.c[name].type), _orders.c[name])
        for name in PATCH_FIELDS
    })
)


@contextmanager
def order_transaction(db: Session):
    """Commit on clean exit, roll back every write on any exception."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


# --- creation -----------------------------------------------------------------

def insert_order(db: Session, **fields) -> Order:
    """Insert the order header under a freshly generated merchant order id.

    Must be the first write of the transaction: on a unique-id conflict the
    transaction is rolled back and the insert retried with a new id.
    """
    for attempt in range(1, ORDER_ID_ATTEMPTS + 1):
        order = Order(
            unique_order_id=generate_unique_order_id(),
            payment_status=PaymentStatus.PENDING.value,
            status=OrderStatus.PENDING.value,
            checkout_state=CheckoutState.CREATED,
            **fields,
        )
        db.add(order)
        try:
            db.flush()
            return order
        except IntegrityError:
            db.rollback()
            logger.warning(f"Order id collision on {order.unique_order_id} (attempt {attempt}/{ORDER_ID_ATTEMPTS})")
    raise InternalError("Could not allocate a unique order id.")


def insert_line_items(db: Session, order_pk: int, items: Iterable[LineItemInput]) -> None:
    for it in items:
        db.add(OrderProduct(
            order_id=order_pk,
            product_id=it.product_id,
            size_id=it.size_id,
            quantity=it.quantity,
            discount=it.discount,
        ))
    db.flush()


def read_checkout_totals(db: Session, order_pk: int) -> Tuple[str, Decimal]:
    row = db.execute(
        select(Order.unique_order_id, Order.grand_total).where(Order.id == order_pk)
    ).one()
    return row.unique_order_id, Decimal(row.grand_total)


def address_for_user(db: Session, address_id: int, user_id: int) -> Optional[Address]:
    return db.execute(
        select(Address).where(Address.id == address_id, Address.user_id == user_id)
    ).scalar_one_or_none()


def sizes_by_id(db: Session, size_ids: Iterable[int]) -> dict:
    rows = db.execute(select(Size).where(Size.id.in_(set(size_ids)))).scalars().all()
    return {s.id: s for s in rows}


# --- reads --------------------------------------------------------------------

def _with_details(stmt):
    return stmt.options(
        selectinload(Order.user),
        selectinload(Order.address),
        selectinload(Order.items).selectinload(OrderProduct.product),
        selectinload(Order.items).selectinload(OrderProduct.size),
    )


def get_order(db: Session, order_pk: int) -> Optional[Order]:
    return db.execute(_with_details(select(Order).where(Order.id == order_pk))).scalar_one_or_none()


def get_order_by_unique_id(db: Session, unique_order_id: str) -> Optional[Order]:
    return db.execute(
        _with_details(select(Order).where(Order.unique_order_id == unique_order_id))
    ).scalar_one_or_none()


def list_orders(db: Session, page: int, limit: int, user_id: Optional[int] = None) -> Tuple[List[Order], int]:
    count_stmt = select(func.count()).select_from(Order)
    stmt = select(Order)
    if user_id is not None:
        count_stmt = count_stmt.where(Order.user_id == user_id)
        stmt = stmt.where(Order.user_id == user_id)
    total = db.execute(count_stmt).scalar_one()
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit)
    return list(db.execute(_with_details(stmt)).scalars().all()), total


def load_line_details(db: Session, order_pk: int) -> List[LineDetail]:
    rows = db.execute(
        select(OrderProduct, Product, Size)
        .join(Product, OrderProduct.product_id == Product.id)
        .join(Size, OrderProduct.size_id == Size.id)
        .where(OrderProduct.order_id == order_pk)
        .order_by(OrderProduct.id)
    ).all()
    lines = []
    for op, product, size in rows:
        lines.append(LineDetail(
            product_id=product.id,
            size_id=size.id,
            name=product.name,
            sku=size.sku or f"{product.slug or product.id}-{size.id}",
            size_name=size.name,
            quantity=op.quantity,
            price=Decimal(size.discount_price or size.price or 0),
            discount=Decimal(op.discount or 0),
            tax_rate=Decimal(product.tax_rate or 0),
            length=Decimal(size.length or 0),
            width=Decimal(size.width or 0),
            height=Decimal(size.height or 0),
            weight=Decimal(size.weight or 0),
        ))
    return lines


# --- post-payment writes (each commits on its own) ----------------------------

def claim_payment(db: Session, order_pk: int, transaction_id: Optional[str]) -> bool:
    """Flip the order to paid. Returns False if it was already paid.

    The WHERE clause makes this the single winner among concurrent
    confirmations of the same order.
    """
    values = {
        "payment_status": PaymentStatus.PAID.value,
        "status": OrderStatus.PROCESSING.value,
        "checkout_state": CheckoutState.PAYMENT_CONFIRMED,
    }
    if transaction_id:
        values["transaction_id"] = transaction_id
    result = db.execute(
        _orders.update()
        .where(_orders.c.id == order_pk, _orders.c.payment_status != PaymentStatus.PAID.value)
        .values(**values)
    )
    db.commit()
    return result.rowcount == 1


def _decrement(db: Session, size_id: int, quantity: int) -> None:
    db.execute(
        _sizes.update().where(_sizes.c.id == size_id).values(stock=_sizes.c.stock - quantity)
    )


def adjust_stock_once(db: Session, order_pk: int, lines: Iterable) -> bool:
    """Decrement stock for every line, at most once per order.

    Setting ``stock_adjusted_at`` is the claim: it only succeeds while the
    marker is null, and it commits together with the decrements. A line
    whose decrement fails is rolled back to its savepoint and skipped.
    Returns False when another run already adjusted this order.
    """
    try:
        claimed = db.execute(
            _orders.update()
            .where(_orders.c.id == order_pk, _orders.c.stock_adjusted_at.is_(None))
            .values(stock_adjusted_at=datetime.utcnow(), checkout_state=CheckoutState.STOCK_ADJUSTED)
        ).rowcount == 1
        if not claimed:
            db.rollback()
            return False
        for ln in lines:
            try:
                with db.begin_nested():
                    _decrement(db, ln.size_id, ln.quantity)
            except SQLAlchemyError as e:
                logger.error(f"Stock decrement failed for order {order_pk}, size {ln.size_id}: {e}")
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def record_shipment(db: Session, order_pk: int, delivery_status: str, carrier_order_id: Optional[str]) -> None:
    db.execute(
        _orders.update().where(_orders.c.id == order_pk).values(
            delivery_status=delivery_status,
            shipment_order_id=carrier_order_id,
            checkout_state=CheckoutState.SHIPMENT_BOOKED,
        )
    )
    db.commit()


def record_invoice(db: Session, order_pk: int, filename: str) -> None:
    db.execute(_orders.update().where(_orders.c.id == order_pk).values(invoice_link=filename))
    db.commit()


def set_checkout_state(db: Session, order_pk: int, state: CheckoutState) -> None:
    db.execute(_orders.update().where(_orders.c.id == order_pk).values(checkout_state=state))
    db.commit()


def apply_patch(db: Session, order_pk: int, patch: OrderPatch) -> bool:
    result = db.execute(_PATCH_STMT, {"target_id": order_pk, **patch.params()})
    db.commit()
    return result.rowcount > 0
