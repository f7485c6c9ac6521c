"""
Billable mixin - gives a model Razorpay subscriptions.

Usage:
    class Organization(Billable, TimestampedModel):
        ...

The concrete model is named by settings.BILLABLE_MODEL so that
Subscription.owner and the webhook handler can resolve it.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from django.db import models
from django.utils import timezone

from apps.billing.builder import SubscriptionBuilder
from apps.billing.models import Subscription
from apps.core.logging import get_logger
from config.settings.base import settings

if TYPE_CHECKING:
    from apps.billing.razorpay_client import RazorpayGateway

logger = get_logger(__name__)

# Fields Razorpay accepts when creating a customer; anything else becomes notes
CUSTOMER_FIELDS = ("name", "email", "contact", "fail_existing")


class Billable(models.Model):
    """Abstract base for entities that own Razorpay subscriptions."""

    razorpay_customer_id = models.CharField(
        max_length=255,
        blank=True,
        db_index=True,
        help_text="Razorpay customer ID, e.g. 'cust_xxx'",
    )
    trial_ends_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Generic trial, independent of any subscription",
    )

    class Meta:
        abstract = True

    def get_billing_details(self) -> dict[str, str]:
        """Defaults for name/email/contact when creating the Razorpay customer."""
        return {
            "name": getattr(self, "full_name", ""),
            "email": getattr(self, "email", ""),
            "contact": getattr(self, "contact", ""),
        }

    # Subscription lookups

    def subscription(self, name: str = "default", include: str = "valid") -> Subscription | None:
        """
        Get the newest subscription in the given slot.

        Args:
            name: Subscription slot name.
            include: "valid" to skip created/expired subscriptions, "all" for any.
        """
        queryset = self.subscriptions.filter(name=name)
        if include == "valid":
            queryset = queryset.filter(status__in=Subscription.VALID_STATUSES)
        return queryset.order_by("-created_at", "-pk").first()

    def subscribed(self, name: str = "default", plan: str | None = None) -> bool:
        subscription = self.subscription(name)
        if subscription is None:
            return False
        if plan is None:
            return subscription.valid()
        return subscription.valid() and subscription.razorpay_plan_id == plan

    def on_trial(self, name: str | None = None, plan: str | None = None) -> bool:
        """
        Determine if the entity is on trial.

        Called without arguments, a generic trial on the entity counts too.
        """
        if name is None and plan is None and self.on_generic_trial():
            return True

        subscription = self.subscription(name or "default")
        if subscription is None or not subscription.on_trial():
            return False
        return plan is None or subscription.razorpay_plan_id == plan

    def on_generic_trial(self) -> bool:
        return self.trial_ends_at is not None and timezone.now() < self.trial_ends_at

    def subscribed_to_plan(self, plans: str | Iterable[str], name: str = "default") -> bool:
        subscription = self.subscription(name)
        if subscription is None or not subscription.valid():
            return False
        if isinstance(plans, str):
            plans = [plans]
        return subscription.razorpay_plan_id in plans

    def on_plan(self, plan: str) -> bool:
        """Any subscription, in any slot, on this plan and still valid."""
        return any(sub.valid() for sub in self.subscriptions.filter(razorpay_plan_id=plan))

    def has_razorpay_id(self) -> bool:
        return bool(self.razorpay_customer_id)

    def new_subscription(self, name: str, plan: str, gateway: RazorpayGateway) -> SubscriptionBuilder:
        return SubscriptionBuilder(self, name, plan, gateway)

    # Pass-throughs to Razorpay

    def create_as_razorpay_customer(
        self, gateway: RazorpayGateway, options: dict[str, Any] | None = None
    ) -> dict:
        """
        Create the Razorpay customer for this entity and store its id.

        name, email and contact default from get_billing_details(). Options
        Razorpay does not recognise are folded into `notes` unless notes
        are given explicitly.
        """
        options = dict(options or {})
        for field, value in self.get_billing_details().items():
            options.setdefault(field, value)
        options.setdefault("fail_existing", 1)

        notes = options.pop("notes", None)
        if notes is None:
            notes = {key: value for key, value in options.items() if key not in CUSTOMER_FIELDS}

        fields = {key: options[key] for key in CUSTOMER_FIELDS if options.get(key) not in (None, "")}
        if notes:
            fields["notes"] = notes

        customer = gateway.create_customer(fields)

        self.razorpay_customer_id = customer["id"]
        self.save()

        logger.info("razorpay_customer_created", customer_id=customer["id"], billable_id=self.pk)
        return customer

    def as_razorpay_customer(self, gateway: RazorpayGateway) -> dict:
        return gateway.fetch_customer(self.razorpay_customer_id)

    def invoice(self, gateway: RazorpayGateway, params: dict[str, Any]) -> dict:
        """Invoice the entity outside its regular billing cycle and issue it."""
        if not self.razorpay_customer_id:
            raise ValueError("Billable has no Razorpay customer")

        invoice = gateway.create_invoice({**params, "customer_id": self.razorpay_customer_id})
        return gateway.issue_invoice(invoice["id"])

    def refund(self, gateway: RazorpayGateway, payment_id: str, amount: int | None = None) -> dict:
        """Refund a payment; omit amount for a full refund."""
        return gateway.create_refund(payment_id, amount)

    def preferred_currency(self) -> str:
        return settings.RAZORPAY_CURRENCY

    def tax_percentage(self) -> int:
        return 0
