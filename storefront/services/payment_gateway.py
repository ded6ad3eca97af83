"""PhonePe Standard Checkout (v2) client.

Only the two calls the checkout pipeline needs: create a payment for a
merchant order id, and read the settlement state back. The gateway state
is authoritative; the caller never trusts a status coming from the browser.
"""

import hashlib
import hmac
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx

from storefront.core.config import settings
from storefront.core.errors import UpstreamError, ValidationError
from storefront.core.logger import setup_logger

logger = setup_logger(__name__)

SANDBOX_HOST = "https://api-preprod.phonepe.com/apis/pg-sandbox"
PRODUCTION_OAUTH_HOST = "https://api.phonepe.com/apis/identity-manager"
PRODUCTION_PG_HOST = "https://api.phonepe.com/apis/pg"

# Refresh the token this many seconds before PhonePe says it expires
TOKEN_EXPIRY_SKEW = 60

STATE_COMPLETED = "COMPLETED"
STATE_PENDING = "PENDING"


class PaymentGatewayError(UpstreamError):
    pass


class GatewayTimeout(PaymentGatewayError):
    pass


@dataclass
class PaymentIntent:
    redirect_url: Optional[str]
    gateway_order_id: Optional[str] = None
    state: Optional[str] = None


@dataclass
class PaymentStatus:
    state: str
    transaction_id: Optional[str] = None
    raw: dict = field(default_factory=dict)


class PhonePeClient:
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        client_version: int = 1,
        env: str = "SANDBOX",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.client_version = client_version
        self.timeout = timeout
        self.transport = transport
        if env.upper() == "PRODUCTION":
            self.oauth_host, self.pg_host = PRODUCTION_OAUTH_HOST, PRODUCTION_PG_HOST
        else:
            self.oauth_host = self.pg_host = SANDBOX_HOST
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, transport=self.transport)

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            with self._client() as client:
                resp = client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"PhonePe timeout on {method} {url}: {e}")
            raise GatewayTimeout("Payment gateway did not respond in time.")
        except httpx.RequestError as e:
            logger.error(f"PhonePe unreachable on {method} {url}: {e}")
            raise PaymentGatewayError("Payment gateway unavailable.")
        if resp.status_code >= 400:
            logger.error(f"PhonePe {method} {url} returned {resp.status_code}: {resp.text}")
            raise PaymentGatewayError(f"Payment gateway rejected the request ({resp.status_code}).")
        try:
            return resp.json()
        except ValueError:
            raise PaymentGatewayError("Payment gateway returned a malformed response.")

    def access_token(self) -> str:
        if self._token and time.time() < self._token_expires_at - TOKEN_EXPIRY_SKEW:
            return self._token
        data = self._request(
            "POST",
            f"{self.oauth_host}/v1/oauth/token",
            data={
                "client_id": self.client_id,
                "client_version": str(self.client_version),
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        token = data.get("access_token")
        if not token:
            raise PaymentGatewayError("Payment gateway did not issue an access token.")
        self._token = token
        self._token_expires_at = float(data.get("expires_at") or 0)
        logger.info("PhonePe access token refreshed")
        return token

    def _auth_headers(self) -> dict:
        return {"Authorization": f"O-Bearer {self.access_token()}"}

    def create_intent(self, order_id: str, amount_minor_units: int, redirect_url: str) -> PaymentIntent:
        if not isinstance(amount_minor_units, int) or isinstance(amount_minor_units, bool) or amount_minor_units <= 0:
            raise ValidationError("Payment amount must be a positive integer in minor units.")
        body = {
            "merchantOrderId": order_id,
            "amount": amount_minor_units,
            "paymentFlow": {
                "type": "PG_CHECKOUT",
                "merchantUrls": {"redirectUrl": redirect_url},
            },
        }
        data = self._request("POST", f"{self.pg_host}/checkout/v2/pay", json=body, headers=self._auth_headers())
        logger.info(f"PhonePe payment created for {order_id}: state={data.get('state')}")
        return PaymentIntent(
            redirect_url=data.get("redirectUrl"),
            gateway_order_id=data.get("orderId"),
            state=data.get("state"),
        )

    def get_status(self, order_id: str) -> PaymentStatus:
        data = self._request(
            "GET",
            f"{self.pg_host}/checkout/v2/order/{order_id}/status",
            headers=self._auth_headers(),
        )
        details = data.get("paymentDetails") or []
        txn = details[0].get("transactionId") if details and isinstance(details[0], dict) else None
        return PaymentStatus(state=str(data.get("state") or "").upper(), transaction_id=txn, raw=data)


def verify_callback(authorization: Optional[str], username: str, password: str) -> bool:
    """PhonePe signs webhooks with ``sha256(username:password)`` in Authorization."""
    if not authorization or not username:
        return False
    expected = hashlib.sha256(f"{username}:{password}".encode("utf-8")).hexdigest()
    received = authorization.strip()
    if received.upper().startswith("SHA256 "):
        received = received.split(" ", 1)[1]
    return hmac.compare_digest(expected.lower(), received.lower())


_gateway: Optional[PhonePeClient] = None

def get_payment_gateway() -> PhonePeClient:
    global _gateway
    if _gateway is None:
        _gateway = PhonePeClient(
            client_id=settings.PHONEPE_CLIENT_ID,
            client_secret=settings.PHONEPE_CLIENT_SECRET,
            client_version=settings.PHONEPE_CLIENT_VERSION,
            env=settings.PHONEPE_ENV,
            timeout=settings.PHONEPE_TIMEOUT_SECONDS,
        )
    return _gateway
