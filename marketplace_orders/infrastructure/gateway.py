"""HTTP client for the payment gateway (Razorpay-compatible REST API)."""

import hashlib
import hmac
import time
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import httpx

from marketplace_orders.application.errors import GatewayError, GatewayUnavailable
from shared.core import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class GatewayIntent:
    gateway_order_id: str
    amount_minor: int
    currency: str
    client_handle: str


@dataclass(frozen=True)
class GatewayPayment:
    gateway_payment_id: str
    method: Optional[str]
    status: Optional[str] = None


@dataclass(frozen=True)
class GatewayRefund:
    refund_id: str
    amount_minor: int


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (rupees) into minor units (paise)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def signature_matches(gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str) -> bool:
    expected = compute_signature(gateway_order_id, gateway_payment_id, secret)
    return hmac.compare_digest(expected, signature or "")


class RazorpayGateway:
    """Payment gateway client.

    Created once per process and shared by every request. ``create_intent``
    and ``refund`` are sent with an ``Idempotency-Key`` and retried on
    transport failures and 5xx answers; ``fetch_payment`` is tried once.
    """

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_backoff: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings, transport: Optional[httpx.BaseTransport] = None) -> "RazorpayGateway":
        return cls(
            key_id=settings.GATEWAY_KEY_ID,
            key_secret=settings.GATEWAY_KEY_SECRET,
            base_url=settings.GATEWAY_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            max_retries=settings.GATEWAY_MAX_RETRIES,
            retry_backoff=settings.GATEWAY_RETRY_BACKOFF_SECONDS,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def create_intent(self, amount_minor: int, currency: str, receipt: str) -> GatewayIntent:
        data = self._request(
            "POST",
            "/orders",
            json={"amount": amount_minor, "currency": currency, "receipt": receipt},
            idempotency_key=f"order-{receipt}",
            retries=self.max_retries,
        )
        return GatewayIntent(
            gateway_order_id=data["id"],
            amount_minor=int(data.get("amount", amount_minor)),
            currency=data.get("currency", currency),
            client_handle=self.key_id,
        )

    def fetch_payment(self, gateway_payment_id: str) -> GatewayPayment:
        data = self._request("GET", f"/payments/{gateway_payment_id}")
        return GatewayPayment(
            gateway_payment_id=data.get("id", gateway_payment_id),
            method=data.get("method"),
            status=data.get("status"),
        )

    def refund(self, gateway_payment_id: str, amount_minor: int, idempotency_key: Optional[str] = None) -> GatewayRefund:
        data = self._request(
            "POST",
            f"/payments/{gateway_payment_id}/refund",
            json={"amount": amount_minor},
            idempotency_key=idempotency_key,
            retries=self.max_retries if idempotency_key else 0,
        )
        return GatewayRefund(refund_id=data["id"], amount_minor=int(data.get("amount", amount_minor)))

    def verify_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        return signature_matches(gateway_order_id, gateway_payment_id, signature, self.key_secret)

    def _request(self, method: str, path: str, json: Optional[dict] = None,
                 idempotency_key: Optional[str] = None, retries: int = 0) -> dict:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        for attempt in range(1, retries + 2):
            try:
                response = self._client.request(method, path, json=json, headers=headers)
            except httpx.HTTPError as e:
                failure = GatewayUnavailable(f"Payment gateway unreachable: {e}")
            else:
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    raise GatewayError(self._error_description(response))
                failure = GatewayUnavailable(
                    f"Payment gateway error {response.status_code}: {self._error_description(response)}"
                )

            if attempt > retries:
                raise failure
            wait_time = self.retry_backoff * attempt
            logger.warning(
                f"Gateway {method} {path} failed (attempt {attempt}/{retries + 1}), retrying in {wait_time}s",
                extra={'extra_fields': {'path': path, 'attempt': attempt, 'error': failure.message}}
            )
            time.sleep(wait_time)

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("description") or error.get("code") or str(error)
        return str(body)
