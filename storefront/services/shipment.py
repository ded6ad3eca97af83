"""Shiprocket integration: package metrics, payload building and booking.

Booking errors are logged and returned as data rather than raised; a paid
order whose shipment could not be booked is still a valid order and the
booking can be retried later.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Tuple

import httpx

from storefront.core.config import settings
from storefront.core.errors import UpstreamError
from storefront.core.logger import setup_logger

logger = setup_logger(__name__)

CENTS = Decimal("0.01")

# Box size declared when no line item carries usable dimensions
DEFAULT_LENGTH = Decimal("10")
DEFAULT_BREADTH = Decimal("10")
DEFAULT_HEIGHT = Decimal("5")

STATUS_NEW = "NEW"


class ShipmentError(UpstreamError):
    pass


class ShipmentRejected(ShipmentError):
    """The carrier answered, but did not book the shipment."""
    status_code = 502

    def __init__(self, message: str, raw: Optional[dict] = None):
        super().__init__(message)
        self.raw = raw or {}


@dataclass
class PackageMetrics:
    total_weight: Decimal
    total_sub_total: Decimal
    length: Decimal
    breadth: Decimal
    height: Decimal


@dataclass
class ShipmentBooking:
    status: Optional[str]
    carrier_order_id: Optional[str] = None
    shipment_id: Optional[str] = None
    raw: dict = field(default_factory=dict)
    already_booked: bool = False

    @property
    def is_new(self) -> bool:
        return (self.status or "").upper() == STATUS_NEW


def _dec(value) -> Decimal:
    try:
        return Decimal(str(value)) if value is not None else Decimal("0")
    except ArithmeticError:
        return Decimal("0")


def calculate_package_metrics(items: Iterable) -> PackageMetrics:
    """Aggregate weight and the largest dimensions across the order's lines.

    Each item needs ``weight``, ``price``, ``quantity``, ``length``,
    ``width`` and ``height`` attributes.
    """
    total_weight = Decimal("0")
    total_sub_total = Decimal("0")
    max_length = max_breadth = max_height = Decimal("0")

    for item in items:
        qty = int(item.quantity or 0)
        total_weight += _dec(item.weight) * qty
        total_sub_total += _dec(item.price) * qty
        max_length = max(max_length, _dec(item.length))
        max_breadth = max(max_breadth, _dec(item.width))
        max_height = max(max_height, _dec(item.height))

    return PackageMetrics(
        total_weight=total_weight.quantize(CENTS, ROUND_HALF_UP),
        total_sub_total=total_sub_total.quantize(CENTS, ROUND_HALF_UP),
        length=(max_length if max_length > 1 else DEFAULT_LENGTH).quantize(CENTS, ROUND_HALF_UP),
        breadth=(max_breadth if max_breadth > 1 else DEFAULT_BREADTH).quantize(CENTS, ROUND_HALF_UP),
        height=(max_height if max_height > 1 else DEFAULT_HEIGHT).quantize(CENTS, ROUND_HALF_UP),
    )


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    parts = (full_name or "").split()
    if not parts:
        return "Customer", ""
    return parts[0], " ".join(parts[1:])


def build_shipment_payload(order, customer, address, lines: List, metrics: PackageMetrics, pickup_location: str) -> dict:
    first_name, last_name = split_name(customer.name)
    return {
        "order_id": order.unique_order_id,
        "order_date": order.created_at.strftime("%Y-%m-%d %H:%M"),
        "pickup_location": pickup_location,
        "billing_customer_name": first_name,
        "billing_last_name": last_name,
        "billing_address": address.address1,
        "billing_address_2": " ".join(p for p in (address.address2, address.landmark) if p),
        "billing_city": address.city,
        "billing_pincode": address.pincode,
        "billing_state": address.state,
        "billing_country": address.country or "India",
        "billing_email": customer.email,
        "billing_phone": customer.mobile or "",
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": ln.name if not ln.size_name else f"{ln.name} ({ln.size_name})",
                "sku": ln.sku,
                "units": ln.quantity,
                "selling_price": str(_dec(ln.price).quantize(CENTS)),
                "discount": str(_dec(ln.discount).quantize(CENTS)),
                "tax": str(_dec(ln.tax_rate)),
            }
            for ln in lines
        ],
        "payment_method": "Prepaid",
        "shipping_charges": str(_dec(order.shipping).quantize(CENTS)),
        "total_discount": str(_dec(order.discount).quantize(CENTS)),
        "sub_total": str(metrics.total_sub_total),
        "length": str(metrics.length),
        "breadth": str(metrics.breadth),
        "height": str(metrics.height),
        "weight": str(metrics.total_weight),
    }


class ShiprocketClient:
    def __init__(
        self,
        base_url: str,
        email: str,
        password: str,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def authenticate(self) -> str:
        # A fresh token per booking; Shiprocket tokens are not cached here
        try:
            with self._client() as client:
                resp = client.post(f"{self.base_url}/auth/login", json={"email": self.email, "password": self.password})
        except httpx.RequestError as e:
            logger.error(f"Shiprocket auth request failed: {e}")
            raise ShipmentError("Failed to authenticate with Shiprocket API.")
        if resp.status_code >= 400:
            logger.error(f"Shiprocket auth error {resp.status_code}: {resp.text}")
            raise ShipmentError("Failed to authenticate with Shiprocket API.")
        token = (resp.json() or {}).get("token")
        if not token:
            raise ShipmentError("Shiprocket did not return a token.")
        logger.info("Shiprocket token generated successfully.")
        return token

    def book_shipment(self, payload: dict) -> Optional[ShipmentBooking]:
        """Create an adhoc Shiprocket order.

        Returns None when the carrier could not be reached at all, and a
        booking without a status when it answered with an error body.
        """
        try:
            token = self.authenticate()
            with self._client() as client:
                resp = client.post(
                    f"{self.base_url}/orders/create/adhoc",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except (ShipmentError, httpx.RequestError) as e:
            logger.error(f"Shiprocket booking for {payload.get('order_id')} failed: {e}")
            return None

        try:
            body = resp.json()
        except ValueError:
            body = {"message": resp.text}
        if not isinstance(body, dict):
            body = {"response": body}

        if resp.status_code >= 400:
            logger.error(f"Shiprocket API error {resp.status_code} for {payload.get('order_id')}: {body}")
            return ShipmentBooking(status=None, raw=body)

        booking = ShipmentBooking(
            status=body.get("status"),
            carrier_order_id=str(body["order_id"]) if body.get("order_id") is not None else None,
            shipment_id=str(body["shipment_id"]) if body.get("shipment_id") is not None else None,
            raw=body,
        )
        logger.info(f"Shiprocket order created for {payload.get('order_id')}: SR ID {booking.carrier_order_id}, status {booking.status}")
        return booking


def get_carrier() -> ShiprocketClient:
    return ShiprocketClient(
        base_url=settings.SR_BASE_URL,
        email=settings.SR_API_EMAIL,
        password=settings.SR_API_PASSWORD,
        timeout=settings.SR_TIMEOUT_SECONDS,
    )
