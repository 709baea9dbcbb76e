"""Payment gateway client and the online payment flows that mirror into orders."""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import Settings, get_settings
from .errors import (
    InvalidOrderError,
    InvalidSignatureError,
    PaymentGatewayError,
    PaymentNotCapturedError,
    WebhookRejectedError,
)
from .models import Cart, _utc_now
from .orders import CheckoutResult, OrderStore, validate_cart
from .store import Database

logger = logging.getLogger(__name__)

ALLOWED_WEBHOOK_EVENTS = frozenset({"payment.captured", "payment.failed"})
PRODUCT_PAYMENT_TYPE = "product"


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    gateway_order_id: str, payment_id: str, signature: str, secret: str
) -> None:
    """
    Check the checkout signature the gateway hands back to the client.

    Raises:
        InvalidSignatureError: If the signature does not match.
    """
    expected = _hmac_hex(secret, f"{gateway_order_id}|{payment_id}".encode())
    if not signature or not hmac.compare_digest(expected, signature):
        raise InvalidSignatureError("payment")


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> None:
    """
    Check a webhook signature over the exact bytes received.

    Raises:
        InvalidSignatureError: If the signature does not match.
    """
    expected = _hmac_hex(secret, raw_body)
    if not signature or not hmac.compare_digest(expected, signature):
        raise InvalidSignatureError("webhook")


class PaymentGateway:
    """Minimal synchronous client for the gateway's REST API."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self._client = httpx.Client(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PaymentGateway":
        settings = settings or get_settings()
        return cls(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            base_url=settings.razorpay_base_url,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("Gateway %s failed: %s", operation, e)
            raise PaymentGatewayError(operation, str(e)) from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", {}).get("description") or response.text
            except ValueError:
                detail = response.text
            logger.error("Gateway %s returned HTTP %d: %s", operation, response.status_code, detail)
            raise PaymentGatewayError(operation, f"HTTP {response.status_code}: {detail}")
        return response.json()

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a gateway order. `amount` is in the currency's smallest unit."""
        return self._request(
            "create_order",
            "POST",
            "/orders",
            json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )

    def fetch_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("fetch_payment", "GET", f"/payments/{payment_id}")


@dataclass
class WebhookOutcome:
    event_id: str
    event: str
    duplicate: bool = False
    orders: list[Any] = field(default_factory=list)


class PaymentService:
    """Online product checkout: gateway order, client verification, webhook."""

    def __init__(self, db: Database, gateway: PaymentGateway, settings: Settings | None = None):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.orders = OrderStore(db)

    def create_product_payment_order(
        self, user_id: str, amount: int, cart: Cart, currency: str | None = None
    ) -> dict[str, Any]:
        """
        Create a gateway order carrying the cart in its notes.

        The webhook rebuilds the cart from those notes when the client never
        calls verify.
        """
        if amount <= 0:
            raise InvalidOrderError("amount must be positive")
        validate_cart(cart)
        notes = {
            "userId": user_id,
            "paymentType": PRODUCT_PAYMENT_TYPE,
            "orderData": json.dumps(cart.to_payload()),
        }
        gateway_order = self.gateway.create_order(
            amount=amount,
            currency=currency or self.settings.currency,
            receipt=f"product_{user_id}_{_utc_now()}"[:40],
            notes=notes,
        )
        logger.info("Created gateway order %s for %s", gateway_order.get("id"), user_id)
        return {
            "order_id": gateway_order.get("id"),
            "amount": gateway_order.get("amount", amount),
            "currency": gateway_order.get("currency", currency or self.settings.currency),
            "key_id": self.gateway.key_id,
        }

    def verify_product_payment(
        self,
        cart: Cart,
        gateway_order_id: str,
        payment_id: str,
        signature: str,
    ) -> tuple[CheckoutResult, bool]:
        """
        Verify a client-reported payment and create the paid orders.

        Returns the orders and whether this call created them; a payment the
        webhook already turned into orders returns those orders.
        """
        verify_payment_signature(
            gateway_order_id, payment_id, signature, self.settings.razorpay_key_secret
        )
        payment = self.gateway.fetch_payment(payment_id)
        status = payment.get("status", "unknown")
        if status != "captured":
            raise PaymentNotCapturedError(payment_id, status)

        cart.is_paid = True
        cart.cod = False
        cart.payment_id = payment_id
        cart.gateway_order_id = gateway_order_id
        return self.orders.create_paid_orders(cart)

    def handle_webhook(
        self,
        raw_body: bytes,
        signature: str | None,
        event_id: str | None,
    ) -> WebhookOutcome:
        secret = self.settings.razorpay_webhook_secret
        if not secret or not signature:
            raise WebhookRejectedError("webhook secret or signature missing")
        verify_webhook_signature(raw_body, signature, secret)

        try:
            body = json.loads(raw_body)
        except ValueError as e:
            raise WebhookRejectedError("body is not valid JSON") from e
        if not isinstance(body, dict):
            raise WebhookRejectedError("body must be a JSON object")

        if not event_id or not body.get("created_at"):
            raise WebhookRejectedError("missing event id or created_at")
        event = body.get("event", "")
        if event not in ALLOWED_WEBHOOK_EVENTS:
            logger.warning("Webhook event not allowed: %s", event)
            raise WebhookRejectedError(f"event not allowed: {event}")

        payment = ((body.get("payload") or {}).get("payment") or {}).get("entity")
        if not isinstance(payment, dict):
            raise WebhookRejectedError("missing payment entity")

        if event_id in self.db.collection("processed_events"):
            logger.info("Webhook event %s already processed", event_id)
            return WebhookOutcome(event_id=event_id, event=event, duplicate=True)

        outcome = WebhookOutcome(event_id=event_id, event=event)
        if event == "payment.captured":
            outcome.orders = self._handle_captured(payment)
        else:
            logger.warning(
                "Payment %s failed: %s", payment.get("id"), payment.get("error_description")
            )

        with self.db.transaction() as data:
            data["processed_events"][event_id] = {
                "id": event_id,
                "event": event,
                "payment_id": payment.get("id"),
                "processed_at": _utc_now(),
            }
        return outcome

    def _handle_captured(self, payment: dict[str, Any]) -> list[Any]:
        payment_id = payment.get("id")
        if payment.get("status") != "captured":
            raise PaymentNotCapturedError(payment_id or "unknown", payment.get("status", "unknown"))

        notes = payment.get("notes") or {}
        if notes.get("paymentType") != PRODUCT_PAYMENT_TYPE or not notes.get("orderData"):
            logger.info("Captured payment %s is not a product payment; nothing to create", payment_id)
            return []

        user_id = notes.get("userId")
        if not user_id or not isinstance(user_id, str):
            raise WebhookRejectedError("invalid userId in payment notes")
        try:
            cart = Cart.from_payload(user_id, json.loads(notes["orderData"]))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise WebhookRejectedError("invalid orderData in payment notes") from e

        cart.is_paid = True
        cart.payment_id = payment_id
        cart.gateway_order_id = payment.get("order_id")
        result, created = self.orders.create_paid_orders(cart)
        if created:
            logger.info("Webhook created %d order(s) for payment %s", len(result.orders), payment_id)
        return result.orders
