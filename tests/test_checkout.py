from decimal import Decimal

import pytest
from sqlalchemy import func, select

from storefront.core.errors import AuthError, NotFoundError, UpstreamError, ValidationError
from storefront.db import models
from storefront.db.models import CheckoutState
from storefront.services.checkout import OrderTotals, to_minor_units
from storefront.services.payment_gateway import GatewayTimeout, PaymentGatewayError
from storefront.services.shipment import ShipmentBooking, ShipmentRejected
from storefront.store import order_store
from storefront.store.order_store import LineItemInput


def _items(catalog, qty=3, size_key="large_id"):
    return [LineItemInput(product_id=catalog["product_id"], size_id=catalog[size_key], quantity=qty)]


def _totals(grand="1499.50", **kw):
    g = None if grand is None else Decimal(grand)
    return OrderTotals(subtotal=g or Decimal("0"), total=g or Decimal("0"), grand_total=g, **kw)


def _place(orchestrator, db, customer, catalog, qty=3, grand="1499.50"):
    return orchestrator.create_order(
        db, customer["user_id"], customer["address_id"], "PREPAID", _items(catalog, qty), _totals(grand),
    ).merchant_order_id


def _order(db, uid):
    db.expire_all()
    return db.execute(select(models.Order).where(models.Order.unique_order_id == uid)).scalar_one()


def _stock(db, size_id):
    db.expire_all()
    return db.get(models.Size, size_id).stock


def _row_counts(db):
    return (
        db.execute(select(func.count()).select_from(models.Order)).scalar_one(),
        db.execute(select(func.count()).select_from(models.OrderProduct)).scalar_one(),
    )


# --- minor units ----------------------------------------------------------------

@pytest.mark.parametrize("amount,expected", [
    (Decimal("1499.50"), 149950),
    ("10.999", 1099),
    (0.1 + 0.2, 30),
    (Decimal("1"), 100),
])
def test_to_minor_units_truncates(amount, expected):
    assert to_minor_units(amount) == expected


def test_grand_total_mismatch_is_only_logged(caplog):
    totals = OrderTotals(subtotal=Decimal("100"), shipping=Decimal("10"), grand_total=Decimal("999"))
    totals.check_consistency("ABC")
    assert totals.derived_grand_total() == Decimal("110.00")
    assert "mismatch" in caplog.text


# --- create ---------------------------------------------------------------------

def test_create_order_initiates_payment(orchestrator, gateway, db_session, customer, catalog):
    result = orchestrator.create_order(
        db_session, customer["user_id"], customer["address_id"], "PREPAID", _items(catalog), _totals(),
    )
    assert result.redirect_url == "https://pay.test/checkout/abc"

    order = _order(db_session, result.merchant_order_id)
    assert order.checkout_state == CheckoutState.PAYMENT_INITIATED
    assert order.payment_status == "pending"
    assert order.status == "pending"
    assert order.grand_total == Decimal("1499.50")
    assert len(order.items) == 1

    uid, amount, redirect = gateway.intents[0]
    assert uid == result.merchant_order_id
    assert amount == 149950
    assert redirect == f"https://shop.test/payment-status/{uid}"
    # stock is only touched at confirmation
    assert _stock(db_session, catalog["large_id"]) == 10


def test_gateway_failure_leaves_no_rows(orchestrator, gateway, db_session, customer, catalog):
    gateway.create_error = PaymentGatewayError("rejected")
    with pytest.raises(UpstreamError):
        _place(orchestrator, db_session, customer, catalog)
    assert _row_counts(db_session) == (0, 0)


def test_gateway_timeout_tells_client_to_check_orders(orchestrator, gateway, db_session, customer, catalog):
    gateway.create_error = GatewayTimeout("slow")
    with pytest.raises(UpstreamError) as exc:
        _place(orchestrator, db_session, customer, catalog)
    assert "check your orders" in exc.value.message
    assert _row_counts(db_session) == (0, 0)


def test_missing_redirect_rolls_back(orchestrator, gateway, db_session, customer, catalog):
    gateway.redirect_url = None
    with pytest.raises(UpstreamError):
        _place(orchestrator, db_session, customer, catalog)
    assert _row_counts(db_session) == (0, 0)


@pytest.mark.parametrize("grand", ["0", None, "-5"])
def test_non_positive_grand_total_rejected_before_any_write(orchestrator, gateway, db_session, customer, catalog, grand):
    with pytest.raises(ValidationError):
        _place(orchestrator, db_session, customer, catalog, grand=grand)
    assert gateway.intents == []
    assert _row_counts(db_session) == (0, 0)


def test_create_order_validates_inputs(orchestrator, gateway, db_session, customer, other_customer, catalog):
    with pytest.raises(AuthError):
        orchestrator.create_order(db_session, None, customer["address_id"], "PREPAID", _items(catalog), _totals())
    with pytest.raises(ValidationError):
        orchestrator.create_order(db_session, customer["user_id"], None, "PREPAID", _items(catalog), _totals())
    with pytest.raises(ValidationError):
        orchestrator.create_order(db_session, customer["user_id"], customer["address_id"], "PREPAID", [], _totals())
    # address belongs to someone else
    with pytest.raises(ValidationError):
        orchestrator.create_order(
            db_session, customer["user_id"], other_customer["address_id"], "PREPAID", _items(catalog), _totals(),
        )
    # size of a different product
    bad = [LineItemInput(product_id=catalog["product_id"] + 100, size_id=catalog["large_id"], quantity=1)]
    with pytest.raises(ValidationError):
        orchestrator.create_order(db_session, customer["user_id"], customer["address_id"], "PREPAID", bad, _totals())
    assert gateway.intents == []
    assert _row_counts(db_session) == (0, 0)


def test_order_id_collision_is_retried(orchestrator, db_session, customer, catalog, monkeypatch):
    first = _place(orchestrator, db_session, customer, catalog)
    ids = iter([first, "FRESH-ID0001"])
    monkeypatch.setattr("storefront.store.order_store.generate_unique_order_id", lambda: next(ids))

    second = _place(orchestrator, db_session, customer, catalog)
    assert second == "FRESH-ID0001"
    assert _row_counts(db_session) == (2, 2)


# --- confirm --------------------------------------------------------------------

def test_confirm_completed_runs_full_fulfillment(
    orchestrator, carrier, renderer, notifier, db_session, customer, catalog, invoice_dir,
):
    uid = _place(orchestrator, db_session, customer, catalog, qty=3)
    result = orchestrator.confirm_payment(db_session, uid)

    assert result.success
    assert result.status_code == 200
    assert result.state == CheckoutState.FULFILLED
    assert result.navigate_to == f"https://shop.test/order-success/{uid}"

    order = _order(db_session, uid)
    assert order.payment_status == "paid"
    assert order.status == "processing"
    assert order.transaction_id == "TXN-001"
    assert order.stock_adjusted_at is not None
    assert order.delivery_status == "NEW"
    assert order.shipment_order_id == "SR-1001"
    assert order.invoice_link == f"invoice_{uid}.pdf"
    assert order.checkout_state == CheckoutState.FULFILLED
    assert (invoice_dir / order.invoice_link).exists()

    assert _stock(db_session, catalog["large_id"]) == 7
    assert len(carrier.payloads) == 1
    assert renderer.calls == [uid]
    assert notifier.calls == [(uid, customer["email"], str(invoice_dir / f"invoice_{uid}.pdf"))]


def test_confirm_twice_has_side_effects_once(orchestrator, gateway, carrier, renderer, notifier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog, qty=3)
    first = orchestrator.confirm_payment(db_session, uid)
    second = orchestrator.confirm_payment(db_session, uid)

    assert first.success and second.success
    assert second.state == CheckoutState.FULFILLED
    # the paid short-circuit does not even ask the gateway again
    assert gateway.status_calls == [uid]
    assert _stock(db_session, catalog["large_id"]) == 7
    assert len(carrier.payloads) == 1
    assert len(renderer.calls) == 1
    assert len(notifier.calls) == 1


def test_confirm_paid_order_skips_fulfillment(orchestrator, gateway, carrier, renderer, notifier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    order = _order(db_session, uid)
    order.payment_status = "paid"
    db_session.commit()

    result = orchestrator.confirm_payment(db_session, uid)
    assert result.success
    assert gateway.status_calls == []
    assert carrier.payloads == [] and renderer.calls == [] and notifier.calls == []


def test_confirm_pending_mutates_nothing(orchestrator, gateway, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    gateway.state = "PENDING"
    result = orchestrator.confirm_payment(db_session, uid)

    assert not result.success
    assert result.status_code == 200
    assert result.navigate_to.endswith(f"/order-pending/{uid}")
    order = _order(db_session, uid)
    assert order.payment_status == "pending"
    assert order.checkout_state == CheckoutState.PAYMENT_INITIATED
    assert _stock(db_session, catalog["large_id"]) == 10


@pytest.mark.parametrize("state", ["FAILED", "CANCELLED", ""])
def test_confirm_failed_mutates_nothing(orchestrator, gateway, db_session, customer, catalog, state):
    uid = _place(orchestrator, db_session, customer, catalog)
    gateway.state = state
    result = orchestrator.confirm_payment(db_session, uid)

    assert not result.success
    assert result.status_code == 400
    assert result.state == CheckoutState.PAYMENT_FAILED
    assert result.navigate_to.endswith(f"/order-failed/{uid}")
    order = _order(db_session, uid)
    assert order.payment_status == "pending"
    assert order.checkout_state == CheckoutState.PAYMENT_INITIATED


def test_confirm_gateway_error_is_500_without_mutation(orchestrator, gateway, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    gateway.status_error = GatewayTimeout("slow")
    with pytest.raises(UpstreamError) as exc:
        orchestrator.confirm_payment(db_session, uid)
    assert exc.value.status_code == 500
    assert "later" in exc.value.message
    assert _order(db_session, uid).payment_status == "pending"


def test_confirm_unknown_and_missing_order(orchestrator, db_session):
    with pytest.raises(NotFoundError):
        orchestrator.confirm_payment(db_session, "NOPE-000000")
    with pytest.raises(ValidationError):
        orchestrator.confirm_payment(db_session, "")


def test_shipment_failure_is_tolerated_then_resumed(orchestrator, carrier, renderer, notifier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog, qty=3)
    carrier.booking = None

    result = orchestrator.confirm_payment(db_session, uid)
    assert result.success
    order = _order(db_session, uid)
    assert order.delivery_status is None
    assert order.invoice_link is not None
    assert order.checkout_state == CheckoutState.STOCK_ADJUSTED
    assert len(notifier.calls) == 1

    carrier.booking = ShipmentBooking(status="NEW", carrier_order_id="SR-9", shipment_id="SH-9")
    state = orchestrator.resume_fulfillment(db_session, uid)

    assert state == CheckoutState.FULFILLED
    order = _order(db_session, uid)
    assert order.shipment_order_id == "SR-9"
    # completed steps are not repeated
    assert _stock(db_session, catalog["large_id"]) == 7
    assert len(renderer.calls) == 1
    assert len(notifier.calls) == 1


def test_processing_error_after_payment_keeps_order_paid(orchestrator, renderer, db_session, customer, catalog, monkeypatch):
    uid = _place(orchestrator, db_session, customer, catalog, qty=2)

    def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    orchestrator.invoice_renderer = broken
    result = orchestrator.confirm_payment(db_session, uid)

    assert not result.success
    assert result.status_code == 500
    assert result.state == CheckoutState.PROCESSING_ERROR
    assert "retry" not in result.message.lower()
    order = _order(db_session, uid)
    assert order.payment_status == "paid"
    assert order.checkout_state == CheckoutState.SHIPMENT_BOOKED
    assert order.invoice_link is None

    orchestrator.invoice_renderer = renderer
    assert orchestrator.resume_fulfillment(db_session, uid) == CheckoutState.FULFILLED
    assert _stock(db_session, catalog["large_id"]) == 8


def test_stock_failure_rolls_back_and_resumes_once(orchestrator, carrier, db_session, customer, catalog, monkeypatch):
    uid = _place(orchestrator, db_session, customer, catalog, qty=3)

    def lost(db, size_id, quantity):
        raise RuntimeError("connection lost")

    real = order_store._decrement
    monkeypatch.setattr(order_store, "_decrement", lost)
    result = orchestrator.confirm_payment(db_session, uid)

    assert result.state == CheckoutState.PROCESSING_ERROR
    order = _order(db_session, uid)
    assert order.payment_status == "paid"
    assert order.stock_adjusted_at is None
    assert order.checkout_state == CheckoutState.PAYMENT_CONFIRMED
    assert _stock(db_session, catalog["large_id"]) == 10
    assert carrier.payloads == []

    monkeypatch.setattr(order_store, "_decrement", real)
    assert orchestrator.resume_fulfillment(db_session, uid) == CheckoutState.FULFILLED
    assert _stock(db_session, catalog["large_id"]) == 7

    assert orchestrator.resume_fulfillment(db_session, uid) == CheckoutState.FULFILLED
    assert _stock(db_session, catalog["large_id"]) == 7
    assert len(carrier.payloads) == 1


def test_email_failure_does_not_fail_confirmation(orchestrator, notifier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    notifier.result = False
    result = orchestrator.confirm_payment(db_session, uid)
    assert result.success
    assert _order(db_session, uid).checkout_state == CheckoutState.FULFILLED


def test_resume_requires_paid_order(orchestrator, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    with pytest.raises(ValidationError):
        orchestrator.resume_fulfillment(db_session, uid)


# --- standalone shipment ---------------------------------------------------------

def test_create_shipment_requires_payment(orchestrator, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    with pytest.raises(ValidationError):
        orchestrator.create_shipment(db_session, uid)


def test_create_shipment_rejected_carries_raw_error(orchestrator, carrier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    carrier.booking = None
    orchestrator.confirm_payment(db_session, uid)

    carrier.booking = ShipmentBooking(status=None, raw={"message": "Invalid pincode"})
    with pytest.raises(ShipmentRejected) as exc:
        orchestrator.create_shipment(db_session, uid)
    assert exc.value.status_code == 502
    assert exc.value.raw == {"message": "Invalid pincode"}

    carrier.booking = ShipmentBooking(status="NEW", carrier_order_id="SR-77", shipment_id="SH-77")
    booking = orchestrator.create_shipment(db_session, uid)
    assert booking.carrier_order_id == "SR-77"
    order = _order(db_session, uid)
    assert order.delivery_status == "NEW"
    assert order.checkout_state == CheckoutState.FULFILLED


def test_shipment_payload_uses_order_lines(orchestrator, carrier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog, qty=2)
    orchestrator.confirm_payment(db_session, uid)

    payload = carrier.payloads[0]
    assert payload["order_id"] == uid
    assert payload["billing_customer_name"] == "Asha"
    assert payload["billing_last_name"] == "Rao Kulkarni"
    assert payload["payment_method"] == "Prepaid"
    assert payload["order_items"][0]["sku"] == "CF-L"
    assert payload["order_items"][0]["units"] == 2
    assert payload["weight"] == "1.00"
    assert (payload["length"], payload["breadth"], payload["height"]) == ("30.00", "20.00", "25.00")


def test_create_shipment_on_booked_order_returns_existing_booking(orchestrator, carrier, db_session, customer, catalog):
    uid = _place(orchestrator, db_session, customer, catalog)
    orchestrator.confirm_payment(db_session, uid)
    assert len(carrier.payloads) == 1

    carrier.booking = ShipmentBooking(status="NEW", carrier_order_id="SR-2002", shipment_id="SH-2002")
    booking = orchestrator.create_shipment(db_session, uid)

    assert booking.already_booked
    assert booking.carrier_order_id == "SR-1001"
    assert len(carrier.payloads) == 1
    assert _order(db_session, uid).shipment_order_id == "SR-1001"
