"""
Razorpay client configuration.

Provides a configured Razorpay SDK client and the gateway wrapper that
every billing component receives explicitly.
"""

from collections.abc import Callable
from typing import Any

import razorpay
import requests
from razorpay.errors import (
    BadRequestError,
    GatewayError,
    ServerError,
    SignatureVerificationError,
)

from apps.billing.exceptions import RemoteGatewayError, SignatureInvalid
from apps.core.logging import get_logger
from config.settings.base import settings

logger = get_logger(__name__)

APP_TITLE = "django-razorpay-billing"
APP_VERSION = "1.0.0"

SDK_ERRORS = (BadRequestError, GatewayError, ServerError, requests.RequestException)


def get_razorpay() -> razorpay.Client:
    """Build a Razorpay client from settings."""
    client = razorpay.Client(auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET))
    client.set_app_details({"title": APP_TITLE, "version": APP_VERSION})
    return client


class RazorpayGateway:
    """
    Thin wrapper over the Razorpay SDK.

    Every call is bounded by `timeout` and every SDK failure surfaces as
    RemoteGatewayError, so callers only deal with billing exceptions.
    """

    def __init__(self, client: razorpay.Client, timeout: float = 30.0) -> None:
        self.client = client
        self.timeout = timeout

    def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> dict:
        try:
            result = func(*args, timeout=self.timeout)
        except SDK_ERRORS as e:
            logger.warning("razorpay_call_failed", operation=operation, error=str(e))
            raise RemoteGatewayError(operation, str(e)) from e

        if not isinstance(result, dict):
            logger.warning("razorpay_malformed_response", operation=operation)
            raise RemoteGatewayError(operation, f"unexpected response {type(result).__name__}")
        return result

    # Subscriptions

    def create_subscription(self, payload: dict) -> dict:
        return self._call("subscription.create", self.client.subscription.create, payload)

    def fetch_subscription(self, subscription_id: str) -> dict:
        return self._call("subscription.fetch", self.client.subscription.fetch, subscription_id)

    def cancel_subscription(self, subscription_id: str, cancel_at_cycle_end: bool = True) -> dict:
        """
        Cancel a subscription on Razorpay.

        Razorpay decides the effective end; the response carries
        `current_end` for cycle-end cancellations.
        """
        return self._call(
            "subscription.cancel",
            self.client.subscription.cancel,
            subscription_id,
            {"cancel_at_cycle_end": 1 if cancel_at_cycle_end else 0},
        )

    # Webhooks

    def verify_webhook_signature(self, body: bytes | str, signature: str, secret: str) -> None:
        """
        Verify the HMAC signature Razorpay attaches to a delivery.

        Raises:
            SignatureInvalid: If the signature does not match.
        """
        if isinstance(body, bytes):
            try:
                body = body.decode("utf-8")
            except UnicodeDecodeError as e:
                raise SignatureInvalid("body is not valid UTF-8") from e
        try:
            self.client.utility.verify_webhook_signature(body, signature, secret)
        except SignatureVerificationError as e:
            raise SignatureInvalid(str(e)) from e

    # Pass-throughs

    def create_customer(self, fields: dict) -> dict:
        return self._call("customer.create", self.client.customer.create, fields)

    def fetch_customer(self, customer_id: str) -> dict:
        return self._call("customer.fetch", self.client.customer.fetch, customer_id)

    def create_refund(self, payment_id: str, amount: int | None = None) -> dict:
        data: dict[str, Any] = {"payment_id": payment_id}
        if amount is not None:
            data["amount"] = amount
        return self._call("refund.create", self.client.refund.create, data)

    def create_invoice(self, params: dict) -> dict:
        return self._call("invoice.create", self.client.invoice.create, params)

    def issue_invoice(self, invoice_id: str) -> dict:
        return self._call("invoice.issue", self.client.invoice.issue, invoice_id)


def get_gateway() -> RazorpayGateway:
    """Get a gateway bound to a freshly configured client."""
    return RazorpayGateway(get_razorpay(), timeout=settings.RAZORPAY_TIMEOUT)
