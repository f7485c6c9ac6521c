"""
Billing models - Razorpay subscriptions and their lifecycle.

Razorpay is the source of truth for charges and billing-cycle timing.
Local state moves only through the mark_as_* transitions, driven by
webhooks or by explicit cancel calls.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone as dt_timezone
from typing import TYPE_CHECKING, Any

from django.conf import settings
from django.db import models, transaction
from django.utils import timezone

from apps.core.logging import get_logger
from apps.core.models import TimestampedModel

if TYPE_CHECKING:
    from apps.billing.razorpay_client import RazorpayGateway

logger = get_logger(__name__)


def from_timestamp(value: Any) -> datetime | None:
    """Convert a Razorpay unix timestamp to an aware datetime."""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=dt_timezone.utc)


def _coalesce(value: Any, fallback: Any) -> Any:
    return fallback if value is None else value


def _known_status(value: Any, fallback: str) -> str:
    if value is None:
        return fallback
    if value not in Subscription.Status.values:
        logger.warning("razorpay_unknown_subscription_status", status=value, fallback=fallback)
        return fallback
    return value


class Subscription(TimestampedModel):
    """
    Razorpay subscription owned by a billable entity.

    A billable may hold many subscriptions; `name` is the logical slot
    (e.g. "default") and the newest one per slot wins.
    """

    class Status(models.TextChoices):
        CREATED = "created", "Created"
        AUTHENTICATED = "authenticated", "Authenticated"
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"
        PENDING = "pending", "Pending"
        HALTED = "halted", "Halted"
        CANCELLED = "cancelled", "Cancelled"
        COMPLETED = "completed", "Completed"

    VALID_STATUSES = (
        Status.AUTHENTICATED,
        Status.ACTIVE,
        Status.PENDING,
        Status.HALTED,
        Status.CANCELLED,
        Status.COMPLETED,
    )
    UNDER_BILLING_STATUSES = (
        Status.ACTIVE,
        Status.PENDING,
        Status.HALTED,
        Status.CANCELLED,
        Status.COMPLETED,
    )

    owner = models.ForeignKey(
        settings.BILLABLE_MODEL,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    name = models.CharField(max_length=255, default="default")
    razorpay_subscription_id = models.CharField(
        max_length=255,
        unique=True,
        db_index=True,
        help_text="Razorpay subscription ID, e.g. 'sub_xxx'",
    )
    razorpay_plan_id = models.CharField(
        max_length=255,
        help_text="Razorpay plan ID, e.g. 'plan_xxx'",
    )
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.CREATED,
        db_index=True,
    )
    quantity = models.PositiveIntegerField(default=1)
    total_count = models.PositiveIntegerField(default=0)
    paid_count = models.PositiveIntegerField(default=0)
    auth_attempts = models.PositiveIntegerField(default=0)
    charge_at = models.DateTimeField(null=True, blank=True, help_text="Next scheduled charge")
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    ends_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set once the subscription is terminating",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return f"{self.name} ({self.razorpay_subscription_id}) - {self.status}"

    @classmethod
    def from_db(cls, db: str | None, field_names: Any, values: Any) -> Subscription:
        instance = super().from_db(db, field_names, values)
        instance._loaded_razorpay_id = instance.__dict__.get("razorpay_subscription_id")
        return instance

    def save(self, *args: Any, **kwargs: Any) -> None:
        loaded = getattr(self, "_loaded_razorpay_id", None)
        if loaded and self.razorpay_subscription_id != loaded:
            raise ValueError("razorpay_subscription_id cannot change once set")
        super().save(*args, **kwargs)
        self._loaded_razorpay_id = self.razorpay_subscription_id

    # Predicates

    def has_valid_status(self) -> bool:
        return self.status in self.VALID_STATUSES

    def is_under_billing_cycle(self) -> bool:
        """Past the trial and in a status Razorpay bills for."""
        trial_over = self.trial_ends_at is None or timezone.now() >= self.trial_ends_at
        return trial_over and self.status in self.UNDER_BILLING_STATUSES

    def valid(self) -> bool:
        """Determine if the subscription is active, on trial, or within its grace period."""
        return self.active() or self.on_trial() or self.on_grace_period()

    def active(self) -> bool:
        return self.ends_at is None or self.on_grace_period()

    def cancelled(self) -> bool:
        return self.ends_at is not None or self.status == self.Status.CANCELLED

    def authenticated(self) -> bool:
        return self.status == self.Status.AUTHENTICATED

    def on_trial(self) -> bool:
        """
        Within the trial window while still only authenticated.

        Once Razorpay activates the subscription the trial window no
        longer counts.
        """
        if self.trial_ends_at is None:
            return False
        return timezone.now() < self.trial_ends_at and self.authenticated()

    def on_grace_period(self) -> bool:
        """Cancelled or completed, but ends_at has not elapsed yet."""
        if self.ends_at is None:
            return False
        return timezone.now() < self.ends_at

    def is_cancellable(self) -> bool:
        return self.ends_at is None and self.status not in (
            self.Status.CANCELLED,
            self.Status.COMPLETED,
        )

    # Remote operations

    def as_razorpay_subscription(self, gateway: RazorpayGateway) -> dict:
        return gateway.fetch_subscription(self.razorpay_subscription_id)

    def cancel(self, gateway: RazorpayGateway, cancel_at_cycle_end: bool = True) -> Subscription:
        """
        Cancel the subscription on Razorpay and start the grace period.

        A subscription on trial keeps access until the trial would have
        ended; an immediate cancellation ends now; otherwise access runs
        to the end of the current billing cycle.
        """
        remote = gateway.cancel_subscription(
            self.razorpay_subscription_id, cancel_at_cycle_end=cancel_at_cycle_end
        )

        if self.on_trial():
            ends_at = self.trial_ends_at
        elif not cancel_at_cycle_end:
            ends_at = timezone.now()
        else:
            ends_at = from_timestamp(remote.get("current_end"))

        self.mark_as_cancelled(ends_at)
        logger.info(
            "razorpay_subscription_cancelled",
            subscription_id=self.razorpay_subscription_id,
            ends_at=self.ends_at.isoformat(),
        )
        return self

    def cancel_now(self, gateway: RazorpayGateway) -> Subscription:
        """Cancel the subscription immediately."""
        gateway.cancel_subscription(self.razorpay_subscription_id, cancel_at_cycle_end=False)
        self.mark_as_cancelled()
        return self

    # Transitions

    @contextmanager
    def _locked(self) -> Iterator[Subscription]:
        """
        Yield this subscription's row under a row lock.

        Concurrent transitions on the same subscription are serialized
        here; the instance is refreshed once the lock is released.
        """
        with transaction.atomic():
            yield Subscription.objects.select_for_update().get(pk=self.pk)
        self.refresh_from_db()

    def mark_as_cancelled(self, ended_at: datetime | None = None) -> None:
        with self._locked() as row:
            row.status = self.Status.CANCELLED
            row.ends_at = ended_at or timezone.now()
            row.save(update_fields=["status", "ends_at", "updated_at"])

    def mark_as_completed(self, ended_at: datetime | None = None) -> None:
        with self._locked() as row:
            row.status = self.Status.COMPLETED
            row.ends_at = ended_at or timezone.now()
            row.save(update_fields=["status", "ends_at", "updated_at"])

    def mark_as_authenticated(self) -> bool:
        """
        Move from created to authenticated.

        Returns:
            False without touching the row if the status was not `created`.
        """
        with self._locked() as row:
            if row.status != self.Status.CREATED:
                return False
            row.status = self.Status.AUTHENTICATED
            row.save(update_fields=["status", "updated_at"])
        return True

    def mark_as_charged(self, payload: dict) -> None:
        """Merge a charged/activated event payload; absent fields keep their value."""
        with self._locked() as row:
            row.status = _known_status(payload.get("status"), self.Status.ACTIVE)
            row.charge_at = from_timestamp(payload.get("charge_at")) or row.charge_at
            row.auth_attempts = _coalesce(payload.get("auth_attempts"), row.auth_attempts)
            row.trial_ends_at = from_timestamp(payload.get("start_at")) or row.trial_ends_at
            row.paid_count = _coalesce(payload.get("paid_count"), row.paid_count)
            row.total_count = _coalesce(payload.get("total_count"), row.total_count)
            row.save(
                update_fields=[
                    "status",
                    "charge_at",
                    "auth_attempts",
                    "trial_ends_at",
                    "paid_count",
                    "total_count",
                    "updated_at",
                ]
            )

    def mark_as_activated(self, payload: dict) -> None:
        # Razorpay's activated and charged events carry the same shape
        self.mark_as_charged(payload)

    def mark_as_pending(self, payload: dict | None = None) -> None:
        self._merge_retry_state(payload or {}, self.Status.PENDING)

    def mark_as_halted(self, payload: dict) -> None:
        self._merge_retry_state(payload, self.Status.HALTED)

    def _merge_retry_state(self, payload: dict, default_status: str) -> None:
        with self._locked() as row:
            row.status = _known_status(payload.get("status"), default_status)
            row.charge_at = from_timestamp(payload.get("charge_at")) or row.charge_at
            row.auth_attempts = _coalesce(payload.get("auth_attempts"), row.auth_attempts)
            row.save(update_fields=["status", "charge_at", "auth_attempts", "updated_at"])

    def increment_quantity(self, count: int = 1) -> Subscription:
        """Local only; syncing the new quantity to Razorpay is up to the caller."""
        with self._locked() as row:
            row.quantity = max(1, row.quantity + count)
            row.save(update_fields=["quantity", "updated_at"])
        return self

    def decrement_quantity(self, count: int = 1) -> Subscription:
        """Local only; never drops below one seat."""
        with self._locked() as row:
            row.quantity = max(1, row.quantity - count)
            row.save(update_fields=["quantity", "updated_at"])
        return self

    def skip_trial(self) -> Subscription:
        """End the trial immediately. Not saved until the caller saves."""
        self.trial_ends_at = None
        return self
