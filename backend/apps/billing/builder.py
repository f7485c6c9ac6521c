"""
Subscription builder - creates a Razorpay subscription and its local record.

External calls must NOT be inside database transactions.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from apps.billing.exceptions import RemoteGatewayError
from apps.billing.models import Subscription

if TYPE_CHECKING:
    from apps.billing.billable import Billable
    from apps.billing.razorpay_client import RazorpayGateway

logger = logging.getLogger(__name__)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, (str, dict, list)) and not value)


class SubscriptionBuilder:
    """
    Accumulates options for a new subscription.

    Usage:
        subscription = (
            org.new_subscription("default", "plan_monthly", gateway)
            .quantity(5)
            .trial_days(14)
            .create()
        )
    """

    def __init__(
        self,
        owner: Billable,
        name: str,
        plan: str,
        gateway: RazorpayGateway,
    ) -> None:
        self.owner = owner
        self.name = name
        self.plan = plan
        self.gateway = gateway

        self._quantity = 1
        self._total_count = 1
        self._customer_notify = 1
        self._trial_expires: datetime | None = None
        self._skip_trial = False
        # Razorpay has no coupon support; kept so callers can record intent
        self._coupon: str | None = None
        self._notes: dict[str, Any] = {}

    def quantity(self, quantity: int) -> SubscriptionBuilder:
        self._quantity = max(1, quantity)
        return self

    def total_count(self, total_count: int) -> SubscriptionBuilder:
        """Number of billing cycles Razorpay should charge."""
        self._total_count = total_count
        return self

    def customer_notify(self, notify: bool = True) -> SubscriptionBuilder:
        """Whether Razorpay emails/SMSes the customer about lifecycle events."""
        self._customer_notify = 1 if notify else 0
        return self

    def trial_days(self, days: int) -> SubscriptionBuilder:
        self._trial_expires = timezone.now() + timedelta(days=days)
        return self

    def trial_until(self, trial_until: datetime) -> SubscriptionBuilder:
        self._trial_expires = trial_until
        return self

    def skip_trial(self) -> SubscriptionBuilder:
        self._skip_trial = True
        return self

    def with_coupon(self, coupon: str) -> SubscriptionBuilder:
        self._coupon = coupon
        return self

    def with_notes(self, notes: dict[str, Any]) -> SubscriptionBuilder:
        self._notes = dict(notes)
        return self

    def get_start_at_date(self) -> datetime | None:
        """The trial end doubles as Razorpay's start_at; None means start now."""
        if self._skip_trial:
            return None
        return self._trial_expires

    def build_payload(self) -> dict[str, Any]:
        """
        Build the payload for subscription creation.

        Blank values are omitted. Zero is kept so customer_notify=0 is sent.
        """
        start_at = self.get_start_at_date()
        payload = {
            "plan_id": self.plan,
            "customer_id": self.owner.razorpay_customer_id,
            "customer_notify": self._customer_notify,
            "quantity": self._quantity,
            "total_count": self._total_count,
            "start_at": int(start_at.timestamp()) if start_at else None,
            "notes": self._notes,
        }
        return {key: value for key, value in payload.items() if not _is_blank(value)}

    def create(self) -> Subscription:
        """
        Create the subscription on Razorpay, then record it locally.

        Raises:
            RemoteGatewayError: If Razorpay rejects the request. Nothing is
                written locally in that case.
        """
        remote = self.gateway.create_subscription(self.build_payload())
        if not remote.get("id"):
            raise RemoteGatewayError("subscription.create", "response has no subscription id")

        subscription = self.owner.subscriptions.create(
            name=self.name,
            razorpay_subscription_id=remote["id"],
            razorpay_plan_id=self.plan,
            quantity=self._quantity,
            status=remote.get("status") or Subscription.Status.CREATED,
            total_count=remote.get("total_count") or self._total_count,
            paid_count=remote.get("paid_count") or 0,
            auth_attempts=remote.get("auth_attempts") or 0,
            trial_ends_at=self.get_start_at_date(),
            ends_at=None,
        )

        logger.info(
            "Created Razorpay subscription %s for %s %s",
            subscription.razorpay_subscription_id,
            type(self.owner).__name__,
            self.owner.pk,
        )
        return subscription
