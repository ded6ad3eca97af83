from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey, Numeric, Enum as SAEnum
from datetime import datetime
from decimal import Decimal
from enum import Enum
from storefront.db.session import Base

class CheckoutState(str, Enum):
    CREATED = "CREATED"
    PAYMENT_INITIATED = "PAYMENT_INITIATED"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    STOCK_ADJUSTED = "STOCK_ADJUSTED"
    SHIPMENT_BOOKED = "SHIPMENT_BOOKED"
    FULFILLED = "FULFILLED"
    # outcomes only, never written to orders.checkout_state
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PROCESSING_ERROR = "PROCESSING_ERROR"

class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"

class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"

Money = Numeric(10, 2)

class User(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    mobile: Mapped[str] = mapped_column(String(20), default="")
    role: Mapped[str] = mapped_column(String(32), default="customer")

class Address(Base):
    __tablename__ = "addresses"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    address1: Mapped[str] = mapped_column(String(255))
    address2: Mapped[str] = mapped_column(String(255), default="")
    landmark: Mapped[str] = mapped_column(String(255), default="")
    city: Mapped[str] = mapped_column(String(120))
    state: Mapped[str] = mapped_column(String(120))
    pincode: Mapped[str] = mapped_column(String(16))
    country: Mapped[str] = mapped_column(String(64), default="India")

class Product(Base):
    __tablename__ = "products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(240), nullable=False)
    slug: Mapped[str] = mapped_column(String(240), unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=0)
    sizes = relationship("Size", back_populates="product", cascade="all, delete-orphan")

class Size(Base):
    __tablename__ = "sizes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(64))
    sku: Mapped[str | None] = mapped_column(String(64), nullable=True)
    price: Mapped[Decimal] = mapped_column(Money)
    discount_price: Mapped[Decimal] = mapped_column(Money)
    stock: Mapped[int] = mapped_column(Integer, default=0)
    # cm / kg, as the carrier expects
    length: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=0)
    width: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=0)
    height: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=0)
    weight: Mapped[Decimal] = mapped_column(Numeric(8, 3), default=0)
    product = relationship("Product", back_populates="sizes")

class Order(Base):
    __tablename__ = "orders"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    unique_order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    address_id: Mapped[int] = mapped_column(ForeignKey("addresses.id"))
    subtotal: Mapped[Decimal] = mapped_column(Money, default=0)
    tax: Mapped[Decimal] = mapped_column(Money, default=0)
    total: Mapped[Decimal] = mapped_column(Money, default=0)
    shipping: Mapped[Decimal] = mapped_column(Money, default=0)
    discount: Mapped[Decimal] = mapped_column(Money, default=0)
    grand_total: Mapped[Decimal] = mapped_column(Money)
    payment_mode: Mapped[str] = mapped_column(String(32), default="PREPAID")
    payment_status: Mapped[str] = mapped_column(String(32), default=PaymentStatus.PENDING.value)
    status: Mapped[str] = mapped_column(String(32), default=OrderStatus.PENDING.value)
    delivery_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    invoice_link: Mapped[str | None] = mapped_column(String(255), nullable=True)
    checkout_state: Mapped[str] = mapped_column(SAEnum(CheckoutState), default=CheckoutState.CREATED)
    stock_adjusted_at: Mapped[datetime | None] = mapped_column(DateTime(), nullable=True)
    shipment_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow())
    updated_at: Mapped[datetime] = mapped_column(DateTime(), default=lambda: datetime.utcnow(), onupdate=lambda: datetime.utcnow())

    items = relationship("OrderProduct", back_populates="order", cascade="all, delete-orphan")
    user = relationship("User")
    address = relationship("Address")

class OrderProduct(Base):
    __tablename__ = "order_products"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"))
    size_id: Mapped[int] = mapped_column(ForeignKey("sizes.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    discount: Mapped[Decimal] = mapped_column(Money, default=0)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
    size = relationship("Size")
