# payments/gateway.py
import functools
import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP

import requests
from django.conf import settings
from requests import RequestException
from requests.auth import HTTPBasicAuth

from .exceptions import GatewayConfigError, GatewayError

logger = logging.getLogger(__name__)

COMMON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}
DEFAULT_BASE_URL = "https://api.razorpay.com/v1"


# ---------- Amount helpers ----------
def to_minor_units(amount) -> int:
    """Rupees -> paise, rounded half-up to a whole number."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(minor) -> Decimal:
    return (Decimal(int(minor)) / Decimal(100)).quantize(Decimal("0.01"))


def compute_signature(secret: str, message) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    """Thin wrapper over the Razorpay REST API.

    Built once per process (see ``get_client``) and handed to the payment
    services. Construction fails with ``GatewayConfigError`` when the key id
    or secret is missing, so a broken deployment never reaches the gateway.
    """

    def __init__(self, key_id: str, key_secret: str, *, webhook_secret: str = "",
                 base_url: str = DEFAULT_BASE_URL, timeout: int = 30):
        missing = [name for name, value in (("RAZORPAY_KEY_ID", key_id), ("RAZORPAY_SECRET_KEY", key_secret)) if not value]
        if missing:
            logger.error("Razorpay configuration missing: %s", ", ".join(missing))
            raise GatewayConfigError(
                f"Razorpay is not configured. Please set {' and '.join(missing)}."
            )
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret or key_secret
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.auth = HTTPBasicAuth(key_id, key_secret)

    @classmethod
    def from_settings(cls) -> "RazorpayClient":
        return cls(
            getattr(settings, "RAZORPAY_KEY_ID", ""),
            getattr(settings, "RAZORPAY_SECRET_KEY", ""),
            webhook_secret=getattr(settings, "RAZORPAY_WEBHOOK_SECRET", ""),
            base_url=getattr(settings, "RAZORPAY_BASE_URL", DEFAULT_BASE_URL),
            timeout=getattr(settings, "RAZORPAY_TIMEOUT", 30),
        )

    # ---------- HTTP ----------
    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = requests.request(method, url, json=payload, headers=COMMON_HEADERS,
                                    auth=self.auth, timeout=self.timeout)
        except RequestException as e:
            raise GatewayError(f"Gateway request failed: {e}")
        try: data = resp.json()
        except ValueError: data = {"raw": resp.text}
        if resp.status_code == 200:
            return data

        err = (data.get("error") or {}) if isinstance(data, dict) else {}
        description = err.get("description") or f"HTTP {resp.status_code}"
        logger.warning("Razorpay %s %s failed: status=%s body=%s", method, path, resp.status_code, str(data)[:800])
        raise GatewayError(description, code=err.get("code") or "unknown", status=resp.status_code)

    # ---------- API calls ----------
    def create_order(self, *, amount_minor: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
        payload = {"amount": amount_minor, "currency": currency, "receipt": receipt}
        if notes:
            payload["notes"] = notes
        return self._request("POST", "/orders", payload)

    def fetch_payment(self, payment_id: str) -> dict:
        return self._request("GET", f"/payments/{payment_id}")

    def fetch_order_payments(self, gateway_order_id: str) -> list:
        data = self._request("GET", f"/orders/{gateway_order_id}/payments")
        return data.get("items") or []

    # ---------- Signatures ----------
    def payment_signature(self, gateway_order_id: str, payment_id: str) -> str:
        return compute_signature(self.key_secret, f"{gateway_order_id}|{payment_id}")

    def webhook_signature(self, raw_body: bytes) -> str:
        return compute_signature(self.webhook_secret, raw_body)

    def verify_payment_signature(self, gateway_order_id: str, payment_id: str, signature) -> bool:
        return _signatures_equal(self.payment_signature(gateway_order_id, payment_id), signature)

    def verify_webhook_signature(self, raw_body: bytes, signature) -> bool:
        return _signatures_equal(self.webhook_signature(raw_body), signature)


def _signatures_equal(expected: str, received) -> bool:
    # Compared as bytes: compare_digest rejects non-ASCII str input
    if not isinstance(received, str):
        return False
    return hmac.compare_digest(expected.encode("ascii"), received.strip().encode("utf-8"))


@functools.lru_cache(maxsize=None)
def get_client() -> RazorpayClient:
    """Process-wide client. Raises ``GatewayConfigError`` until credentials exist."""
    return RazorpayClient.from_settings()
