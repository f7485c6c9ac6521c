"""
Billing exceptions.
"""


class BillingError(Exception):
    """Base class for billing failures."""


class SignatureInvalid(BillingError):
    """Webhook signature is missing or does not match the payload."""


class RemoteGatewayError(BillingError):
    """
    A call to Razorpay failed.

    Covers network failures, 4xx/5xx responses and malformed responses.
    Callers should treat it as retryable.
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class SubscriptionNotFound(BillingError):
    """No local subscription matches a Razorpay subscription id."""

    def __init__(self, razorpay_subscription_id: str) -> None:
        super().__init__(f"No subscription for {razorpay_subscription_id!r}")
        self.razorpay_subscription_id = razorpay_subscription_id
