"""
Pytest fixtures for the storefront tests.

Provides an in-memory database bound into SessionLocal, seeded customers and
catalog rows, fakes for the payment gateway, carrier, mailer and Redis, and
a TestClient wired to those fakes.
"""

import os
import tempfile

# settings are read at import time
os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["EVENTS_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["INVOICE_DIR"] = tempfile.mkdtemp(prefix="invoices-")
os.environ["PHONEPE_WEBHOOK_USERNAME"] = "hook-user"
os.environ["PHONEPE_WEBHOOK_PASSWORD"] = "hook-pass"
os.environ["FRONTEND_BASE_URL"] = "https://shop.test"
os.environ["PUBLIC_BASE_URL"] = "https://api.shop.test"

from decimal import Decimal
from typing import Any, Dict, List, Optional

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from storefront.api.deps import get_orchestrator
from storefront.core.config import settings
from storefront.db import models
from storefront.db.session import Base, SessionLocal
from storefront.main import app
from storefront.services import invoice
from storefront.services.checkout import CheckoutOrchestrator
from storefront.services.payment_gateway import PaymentIntent, PaymentStatus
from storefront.services.shipment import ShipmentBooking
from storefront.store import activity_store

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
SessionLocal.configure(bind=engine)


# =============================================================================
# FAKES
# =============================================================================

class FakeGateway:
    """Stands in for PhonePeClient; records every call."""

    def __init__(self):
        self.redirect_url: Optional[str] = "https://pay.test/checkout/abc"
        self.state = "COMPLETED"
        self.transaction_id = "TXN-001"
        self.create_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.intents: List[tuple] = []
        self.status_calls: List[str] = []

    def create_intent(self, order_id, amount_minor_units, redirect_url):
        self.intents.append((order_id, amount_minor_units, redirect_url))
        if self.create_error:
            raise self.create_error
        return PaymentIntent(redirect_url=self.redirect_url, gateway_order_id=f"OMO-{order_id}", state="PENDING")

    def get_status(self, order_id):
        self.status_calls.append(order_id)
        if self.status_error:
            raise self.status_error
        return PaymentStatus(state=self.state, transaction_id=self.transaction_id, raw={"state": self.state})


class FakeCarrier:
    def __init__(self):
        self.booking: Optional[ShipmentBooking] = ShipmentBooking(
            status="NEW", carrier_order_id="SR-1001", shipment_id="SH-2001", raw={"status": "NEW"},
        )
        self.payloads: List[dict] = []

    def book_shipment(self, payload):
        self.payloads.append(payload)
        return self.booking


class RecordingNotifier:
    def __init__(self):
        self.calls: List[tuple] = []
        self.result = True

    def notify_order_paid(self, order, customer, address, lines, invoice_path):
        self.calls.append((order.unique_order_id, customer.email, invoice_path))
        return self.result


class RecordingRenderer:
    """Renders the real PDF and counts invocations."""

    def __init__(self, out_dir: str):
        self.out_dir = out_dir
        self.calls: List[str] = []

    def __call__(self, order, lines, customer, address):
        self.calls.append(order.unique_order_id)
        return invoice.generate_invoice(order, lines, customer, address, out_dir=self.out_dir)


class FakeRedis:
    """Dict-backed subset of the redis client used by activity_store."""

    def __init__(self):
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}

    def exists(self, key):
        return 1 if key in self.hashes else 0

    def hset(self, key, field=None, value=None, mapping=None):
        h = self.hashes.setdefault(key, {})
        if field is not None:
            h[field] = str(value)
        for k, v in (mapping or {}).items():
            h[k] = str(v)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def zrevrange(self, key, start, end):
        members = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1], reverse=True)
        return [m for m, _ in members[start:end + 1]]


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture(scope="function", autouse=True)
def schema():
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session():
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def invoice_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "INVOICE_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture(scope="function")
def customer(db_session):
    user = models.User(name="Asha Rao Kulkarni", email="asha@example.test", mobile="9876543210", role="customer")
    db_session.add(user)
    db_session.flush()
    address = models.Address(
        user_id=user.id, address1="12 MG Road", address2="Flat 4", landmark="Near Metro",
        city="Bengaluru", state="Karnataka", pincode="560001", country="India",
    )
    db_session.add(address)
    db_session.commit()
    return {"user_id": user.id, "address_id": address.id, "email": user.email}


@pytest.fixture(scope="function")
def other_customer(db_session):
    user = models.User(name="Vikram", email="vikram@example.test", mobile="9000000000", role="customer")
    db_session.add(user)
    db_session.flush()
    address = models.Address(user_id=user.id, address1="1 Park St", city="Kolkata", state="WB", pincode="700016")
    db_session.add(address)
    db_session.commit()
    return {"user_id": user.id, "address_id": address.id, "email": user.email}


@pytest.fixture(scope="function")
def admin(db_session):
    user = models.User(name="Admin", email="admin@example.test", mobile="", role="admin")
    db_session.add(user)
    db_session.commit()
    return {"user_id": user.id}


@pytest.fixture(scope="function")
def catalog(db_session):
    product = models.Product(name="Canister Filter", slug="canister-filter", description="Quiet", tax_rate=Decimal("18"))
    product.sizes.append(models.Size(
        name="Large", sku="CF-L", price=Decimal("1599.00"), discount_price=Decimal("1499.50"), stock=10,
        length=Decimal("30"), width=Decimal("20"), height=Decimal("25"), weight=Decimal("0.5"),
    ))
    product.sizes.append(models.Size(
        name="Small", sku=None, price=Decimal("799.00"), discount_price=Decimal("0"), stock=4,
        length=Decimal("0"), width=Decimal("0"), height=Decimal("0"), weight=Decimal("0.5"),
    ))
    db_session.add(product)
    db_session.commit()
    large, small = product.sizes
    return {"product_id": product.id, "large_id": large.id, "small_id": small.id}


# =============================================================================
# ORCHESTRATOR / CLIENT
# =============================================================================

@pytest.fixture(scope="function")
def gateway():
    return FakeGateway()


@pytest.fixture(scope="function")
def carrier():
    return FakeCarrier()


@pytest.fixture(scope="function")
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope="function")
def renderer(invoice_dir):
    return RecordingRenderer(str(invoice_dir))


@pytest.fixture(scope="function")
def orchestrator(gateway, carrier, renderer, notifier):
    return CheckoutOrchestrator(gateway=gateway, carrier=carrier, invoice_renderer=renderer, notifier=notifier)


@pytest.fixture(scope="function")
def fake_redis(monkeypatch):
    r = FakeRedis()
    monkeypatch.setattr(activity_store, "get_client", lambda: r)
    return r


@pytest.fixture(scope="function")
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_token(user_id: int, role: str = "customer", token_type: str = "access") -> str:
    return jwt.encode(
        {"user_id": user_id, "role": role, "type": token_type},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )


def auth_header(user_id: int, role: str = "customer") -> Dict[str, Any]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def order_body(customer: dict, catalog: dict, **overrides) -> dict:
    body = {
        "addressId": customer["address_id"],
        "paymentMode": "PREPAID",
        "subtotal": "1499.50",
        "tax": "0.00",
        "total": "1499.50",
        "shipping": "0.00",
        "discount": "0.00",
        "grand_total": "1499.50",
        "products": [{"productId": catalog["product_id"], "sizeId": catalog["large_id"], "quantity": 1, "discount": "0"}],
    }
    body.update(overrides)
    return body
