"""
HTTP client for the Stripe payments API

Only the calls the payment bridge needs are exposed: create, retrieve and
cancel a PaymentIntent, and refund one. Stripe error responses are turned
into PaymentGatewayError carrying Stripe's HTTP status and message so the
route layer can pass them through unchanged.
"""
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol
from opentelemetry import trace
import hashlib
import hmac
import httpx
import logging
import time

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

INTENT_SUCCEEDED = "succeeded"
INTENT_CANCELED = "canceled"


class PaymentGatewayError(Exception):
    """Error reported by (or while talking to) the payment gateway"""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class WebhookSignatureError(Exception):
    """Webhook payload did not carry a valid gateway signature"""


@dataclass
class PaymentIntent:
    id: str
    status: str
    amount: int
    currency: str = "usd"
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> "PaymentIntent":
        return cls(
            id=data["id"],
            status=data.get("status", ""),
            amount=data.get("amount", 0),
            currency=data.get("currency", "usd"),
            client_secret=data.get("client_secret"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class Refund:
    id: str
    status: str
    amount: int


class PaymentGateway(Protocol):
    async def create_intent(
        self, amount: int, currency: str, metadata: Dict[str, str]
    ) -> PaymentIntent: ...

    async def retrieve_intent(self, intent_id: str) -> PaymentIntent: ...

    async def cancel_intent(self, intent_id: str) -> PaymentIntent: ...

    async def create_refund(self, intent_id: str) -> Refund: ...


class StripeGatewayClient:
    """Client for the Stripe REST API"""

    def __init__(self, secret_key: str, base_url: str = "https://api.stripe.com/v1", transport=None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(secret_key or "", ""),
            timeout=15.0,
            transport=transport,
        )

    async def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        with tracer.start_as_current_span(f"stripe.{method.lower()}") as span:
            span.set_attribute("stripe.path", path)
            logger.info(f"Calling Stripe: {method} {path}")

            try:
                response = await self.client.request(method, path, data=data)
            except httpx.HTTPError as e:
                logger.error(f"Failed to call Stripe: {e}")
                span.record_exception(e)
                raise PaymentGatewayError(502, "Payment provider is unreachable") from e

            span.set_attribute("http.status_code", response.status_code)

            try:
                body = response.json()
            except ValueError:
                body = {}

            if response.status_code >= 400:
                message = (body.get("error") or {}).get("message") or "Payment provider error"
                logger.error(f"Stripe error {response.status_code}: {message}")
                raise PaymentGatewayError(response.status_code, message)

            return body

    async def create_intent(
        self, amount: int, currency: str, metadata: Dict[str, str]
    ) -> PaymentIntent:
        data = {
            "amount": amount,
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value

        intent = PaymentIntent.from_api(await self._request("POST", "/payment_intents", data))
        logger.info(f"Created payment intent {intent.id} for {amount} {currency}")
        return intent

    async def retrieve_intent(self, intent_id: str) -> PaymentIntent:
        return PaymentIntent.from_api(await self._request("GET", f"/payment_intents/{intent_id}"))

    async def cancel_intent(self, intent_id: str) -> PaymentIntent:
        intent = PaymentIntent.from_api(
            await self._request("POST", f"/payment_intents/{intent_id}/cancel")
        )
        logger.info(f"Cancelled payment intent {intent_id}")
        return intent

    async def create_refund(self, intent_id: str) -> Refund:
        data = await self._request("POST", "/refunds", {"payment_intent": intent_id})
        logger.info(f"Refund {data.get('id')} issued for payment intent {intent_id}")
        return Refund(id=data["id"], status=data.get("status", ""), amount=data.get("amount", 0))

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()


async def release_intent(gateway: PaymentGateway, intent_id: str) -> None:
    """Cancel an intent so it can no longer be paid.

    Stripe refuses to cancel an intent that is already canceled; that case
    counts as released. Any other refusal is raised unchanged.
    """
    try:
        await gateway.cancel_intent(intent_id)
    except PaymentGatewayError:
        intent = await gateway.retrieve_intent(intent_id)
        if intent.status != INTENT_CANCELED:
            raise
        logger.info(f"Payment intent {intent_id} was already cancelled")


def verify_webhook_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> None:
    """Check a Stripe-Signature header (t=<ts>,v1=<hex hmac>).

    Raises WebhookSignatureError when the header is missing or malformed,
    no v1 signature matches, or the timestamp is outside the tolerance.
    """
    if not signature_header:
        raise WebhookSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    try:
        ts = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed signature timestamp")

    signed = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")
