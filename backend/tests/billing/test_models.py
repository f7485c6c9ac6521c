"""
Tests for the Subscription state machine.
"""

from datetime import datetime, timedelta, timezone as dt_timezone

import pytest
from django.utils import timezone

from apps.billing.exceptions import RemoteGatewayError
from apps.billing.models import Subscription, from_timestamp

from .factories import SubscriptionFactory

S = Subscription.Status


def _now() -> datetime:
    return timezone.now()


@pytest.mark.django_db
class TestSubscriptionModel:
    """Tests for Subscription model basics."""

    def test_str_representation(self) -> None:
        """Should include slot name, Razorpay id and status."""
        sub = SubscriptionFactory(name="default", razorpay_subscription_id="sub_abc", status=S.ACTIVE)
        assert str(sub) == "default (sub_abc) - active"

    def test_razorpay_id_is_immutable(self) -> None:
        """Should refuse to change the Razorpay id once stored."""
        sub = Subscription.objects.get(pk=SubscriptionFactory(razorpay_subscription_id="sub_a").pk)
        sub.razorpay_subscription_id = "sub_b"

        with pytest.raises(ValueError):
            sub.save()

    def test_razorpay_id_is_unique(self) -> None:
        """Should enforce unique constraint on razorpay_subscription_id."""
        SubscriptionFactory(razorpay_subscription_id="sub_same")

        with pytest.raises(Exception):  # IntegrityError wrapped
            SubscriptionFactory(razorpay_subscription_id="sub_same")

    def test_from_timestamp(self) -> None:
        """Should convert unix timestamps and treat empty values as None."""
        assert from_timestamp(0) is None
        assert from_timestamp(None) is None
        assert from_timestamp(1700000000) == datetime(2023, 11, 14, 22, 13, 20, tzinfo=dt_timezone.utc)


@pytest.mark.django_db
class TestSubscriptionPredicates:
    """Tests for timestamp and status derived predicates."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (S.CREATED, False),
            (S.AUTHENTICATED, True),
            (S.ACTIVE, True),
            (S.EXPIRED, False),
            (S.PENDING, True),
            (S.HALTED, True),
            (S.CANCELLED, True),
            (S.COMPLETED, True),
        ],
    )
    def test_has_valid_status(self, status: str, expected: bool) -> None:
        assert SubscriptionFactory(status=status).has_valid_status() is expected

    def test_is_under_billing_cycle_after_trial(self) -> None:
        """Should be billed once the trial is over and Razorpay is charging."""
        sub = SubscriptionFactory(status=S.ACTIVE, trial_ends_at=_now() - timedelta(days=1))
        assert sub.is_under_billing_cycle() is True

    def test_is_not_under_billing_cycle_during_trial(self) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE, trial_ends_at=_now() + timedelta(days=1))
        assert sub.is_under_billing_cycle() is False

    def test_is_not_under_billing_cycle_when_authenticated(self) -> None:
        sub = SubscriptionFactory(status=S.AUTHENTICATED, trial_ends_at=None)
        assert sub.is_under_billing_cycle() is False

    def test_active_without_ends_at(self) -> None:
        """Active disjunct alone makes the subscription valid."""
        sub = SubscriptionFactory(status=S.ACTIVE, ends_at=None)

        assert sub.active() is True
        assert sub.on_trial() is False
        assert sub.on_grace_period() is False
        assert sub.valid() is True

    def test_on_grace_period_when_ends_at_in_future(self) -> None:
        """Grace period keeps a cancelled subscription valid."""
        sub = SubscriptionFactory(status=S.CANCELLED, ends_at=_now() + timedelta(days=3))

        assert sub.on_grace_period() is True
        assert sub.cancelled() is True
        assert sub.valid() is True

    def test_not_valid_after_ends_at(self) -> None:
        sub = SubscriptionFactory(status=S.CANCELLED, ends_at=_now() - timedelta(seconds=1))

        assert sub.active() is False
        assert sub.on_grace_period() is False
        assert sub.on_trial() is False
        assert sub.valid() is False

    def test_on_trial_requires_authenticated_status(self) -> None:
        """Trial only counts while the subscription is still authenticated."""
        trial_end = _now() + timedelta(days=7)

        assert SubscriptionFactory(status=S.AUTHENTICATED, trial_ends_at=trial_end).on_trial() is True
        assert SubscriptionFactory(status=S.ACTIVE, trial_ends_at=trial_end).on_trial() is False

    def test_on_trial_false_without_trial(self) -> None:
        assert SubscriptionFactory(status=S.AUTHENTICATED, trial_ends_at=None).on_trial() is False

    def test_on_trial_alone_makes_subscription_valid(self) -> None:
        """Trial disjunct keeps a subscription valid even after ends_at passed."""
        sub = SubscriptionFactory(
            status=S.AUTHENTICATED,
            trial_ends_at=_now() + timedelta(days=2),
            ends_at=_now() - timedelta(days=1),
        )

        assert sub.active() is False
        assert sub.on_grace_period() is False
        assert sub.on_trial() is True
        assert sub.valid() is True

    def test_cancelled_by_status_alone(self) -> None:
        assert SubscriptionFactory(status=S.CANCELLED, ends_at=None).cancelled() is True

    def test_authenticated(self) -> None:
        assert SubscriptionFactory(status=S.AUTHENTICATED).authenticated() is True
        assert SubscriptionFactory(status=S.CREATED).authenticated() is False

    @pytest.mark.parametrize(
        ("status", "ends_in", "expected"),
        [
            (S.ACTIVE, None, True),
            (S.HALTED, None, True),
            (S.ACTIVE, timedelta(days=1), False),
            (S.CANCELLED, None, False),
            (S.COMPLETED, None, False),
        ],
    )
    def test_is_cancellable(self, status: str, ends_in: timedelta | None, expected: bool) -> None:
        ends_at = _now() + ends_in if ends_in else None
        assert SubscriptionFactory(status=status, ends_at=ends_at).is_cancellable() is expected


@pytest.mark.django_db
class TestSubscriptionTransitions:
    """Tests for the mark_as_* transitions."""

    def test_mark_as_cancelled_defaults_to_now(self) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)
        before = _now()

        sub.mark_as_cancelled()

        sub.refresh_from_db()
        assert sub.status == S.CANCELLED
        assert before <= sub.ends_at <= _now()

    def test_mark_as_cancelled_with_end(self) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)
        ended = _now() + timedelta(days=10)

        sub.mark_as_cancelled(ended)

        assert Subscription.objects.get(pk=sub.pk).ends_at == ended

    def test_mark_as_completed(self) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)

        sub.mark_as_completed()

        assert sub.status == S.COMPLETED
        assert sub.ends_at is not None
        assert sub.cancelled() is True

    def test_mark_as_authenticated_from_created(self) -> None:
        sub = SubscriptionFactory(status=S.CREATED)

        assert sub.mark_as_authenticated() is True
        assert Subscription.objects.get(pk=sub.pk).status == S.AUTHENTICATED

    def test_mark_as_authenticated_is_idempotent(self) -> None:
        """Second delivery of the authenticated event changes nothing."""
        sub = SubscriptionFactory(status=S.CREATED)
        sub.mark_as_authenticated()
        updated_at = Subscription.objects.get(pk=sub.pk).updated_at

        assert sub.mark_as_authenticated() is False
        reloaded = Subscription.objects.get(pk=sub.pk)
        assert reloaded.status == S.AUTHENTICATED
        assert reloaded.updated_at == updated_at

    @pytest.mark.parametrize("status", [S.ACTIVE, S.HALTED, S.CANCELLED, S.EXPIRED])
    def test_mark_as_authenticated_no_op_unless_created(self, status: str) -> None:
        sub = SubscriptionFactory(status=status)

        assert sub.mark_as_authenticated() is False
        assert Subscription.objects.get(pk=sub.pk).status == status

    def test_mark_as_charged_merges_all_fields(self) -> None:
        sub = SubscriptionFactory(status=S.AUTHENTICATED)

        sub.mark_as_charged(
            {
                "status": "active",
                "charge_at": 1800000000,
                "auth_attempts": 1,
                "start_at": 1700000000,
                "paid_count": 3,
                "total_count": 24,
            }
        )

        sub.refresh_from_db()
        assert sub.status == S.ACTIVE
        assert sub.charge_at == from_timestamp(1800000000)
        assert sub.auth_attempts == 1
        assert sub.trial_ends_at == from_timestamp(1700000000)
        assert sub.paid_count == 3
        assert sub.total_count == 24

    def test_mark_as_charged_partial_payload_keeps_fields(self) -> None:
        """A payload with only a status must not clear anything else."""
        charge_at = from_timestamp(1800000000)
        trial_end = from_timestamp(1700000000)
        sub = SubscriptionFactory(
            status=S.PENDING,
            charge_at=charge_at,
            auth_attempts=2,
            trial_ends_at=trial_end,
            paid_count=5,
            total_count=12,
        )

        sub.mark_as_charged({"status": "active"})

        sub.refresh_from_db()
        assert sub.status == S.ACTIVE
        assert sub.charge_at == charge_at
        assert sub.auth_attempts == 2
        assert sub.trial_ends_at == trial_end
        assert sub.paid_count == 5
        assert sub.total_count == 12

    def test_mark_as_charged_defaults_status_to_active(self) -> None:
        sub = SubscriptionFactory(status=S.HALTED)

        sub.mark_as_charged({"paid_count": 1})

        assert sub.status == S.ACTIVE
        assert sub.paid_count == 1

    def test_mark_as_activated_behaves_like_charged(self) -> None:
        sub = SubscriptionFactory(status=S.AUTHENTICATED, paid_count=0)

        sub.mark_as_activated({"paid_count": 1, "charge_at": None})

        assert sub.status == S.ACTIVE
        assert sub.paid_count == 1

    def test_mark_as_pending_only_touches_retry_fields(self) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE, paid_count=4, total_count=12)

        sub.mark_as_pending({"charge_at": 1800000000, "auth_attempts": 2, "paid_count": 9})

        sub.refresh_from_db()
        assert sub.status == S.PENDING
        assert sub.charge_at == from_timestamp(1800000000)
        assert sub.auth_attempts == 2
        assert sub.paid_count == 4

    def test_mark_as_pending_without_payload(self) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE, auth_attempts=1)

        sub.mark_as_pending()

        assert sub.status == S.PENDING
        assert sub.auth_attempts == 1

    def test_mark_as_halted(self) -> None:
        sub = SubscriptionFactory(status=S.PENDING, auth_attempts=3)

        sub.mark_as_halted({"auth_attempts": 4})

        assert sub.status == S.HALTED
        assert sub.auth_attempts == 4

    def test_mark_as_halted_respects_payload_status(self) -> None:
        sub = SubscriptionFactory(status=S.PENDING)

        sub.mark_as_halted({"status": "halted"})

        assert sub.status == S.HALTED

    def test_mark_as_charged_ignores_unknown_status(self) -> None:
        sub = SubscriptionFactory(status=S.AUTHENTICATED)

        sub.mark_as_charged({"status": "paused", "paid_count": 2})

        sub.refresh_from_db()
        assert sub.status == S.ACTIVE
        assert sub.paid_count == 2
        assert sub.has_valid_status() is True

    @pytest.mark.parametrize(
        ("transition", "expected"),
        [("mark_as_pending", S.PENDING), ("mark_as_halted", S.HALTED)],
    )
    def test_retry_transitions_ignore_unknown_status(self, transition: str, expected: str) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)

        getattr(sub, transition)({"status": "bogus", "auth_attempts": 1})

        sub.refresh_from_db()
        assert sub.status == expected
        assert sub.status in Subscription.Status.values
        assert sub.auth_attempts == 1


@pytest.mark.django_db
class TestSubscriptionQuantity:
    """Tests for local quantity adjustments."""

    def test_increment_quantity(self) -> None:
        sub = SubscriptionFactory(quantity=2)

        sub.increment_quantity(3)

        assert Subscription.objects.get(pk=sub.pk).quantity == 5

    def test_decrement_quantity(self) -> None:
        sub = SubscriptionFactory(quantity=5)

        sub.decrement_quantity()

        assert sub.quantity == 4

    def test_decrement_quantity_floors_at_one(self) -> None:
        sub = SubscriptionFactory(quantity=1)

        sub.decrement_quantity(100)

        assert Subscription.objects.get(pk=sub.pk).quantity == 1

    def test_increment_quantity_floors_at_one(self) -> None:
        sub = SubscriptionFactory(quantity=2)

        sub.increment_quantity(-5)

        assert Subscription.objects.get(pk=sub.pk).quantity == 1

    def test_quantity_changes_do_not_call_gateway(self, gateway) -> None:
        sub = SubscriptionFactory(quantity=3)

        sub.increment_quantity().decrement_quantity(2)

        assert sub.quantity == 2
        assert gateway.mock_calls == []

    def test_skip_trial_clears_trial_in_memory(self) -> None:
        sub = SubscriptionFactory(trial_ends_at=_now() + timedelta(days=3))

        assert sub.skip_trial().trial_ends_at is None
        assert Subscription.objects.get(pk=sub.pk).trial_ends_at is not None


@pytest.mark.django_db
class TestSubscriptionCancel:
    """Tests for cancel/cancel_now against a mocked gateway."""

    def test_cancel_on_trial_ends_at_trial_end(self, gateway) -> None:
        """On trial, access lasts until the trial would have ended."""
        trial_end = _now() + timedelta(days=5)
        sub = SubscriptionFactory(status=S.AUTHENTICATED, trial_ends_at=trial_end)
        gateway.cancel_subscription.return_value = {"current_end": 1900000000}

        sub.cancel(gateway, cancel_at_cycle_end=True)

        gateway.cancel_subscription.assert_called_once_with(
            sub.razorpay_subscription_id, cancel_at_cycle_end=True
        )
        assert sub.status == S.CANCELLED
        assert sub.ends_at == trial_end

    def test_cancel_immediately_ends_now(self, gateway) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)
        gateway.cancel_subscription.return_value = {"current_end": 1900000000}
        before = _now()

        sub.cancel(gateway, cancel_at_cycle_end=False)

        assert before <= sub.ends_at <= _now()
        assert sub.ends_at != from_timestamp(1900000000)

    def test_cancel_at_cycle_end_uses_remote_current_end(self, gateway) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)
        gateway.cancel_subscription.return_value = {"current_end": 1900000000}

        sub.cancel(gateway)

        assert sub.status == S.CANCELLED
        assert sub.ends_at == from_timestamp(1900000000)
        assert sub.on_grace_period() is True

    def test_cancel_propagates_gateway_error(self, gateway) -> None:
        """No local change when Razorpay refuses the cancellation."""
        sub = SubscriptionFactory(status=S.ACTIVE)
        gateway.cancel_subscription.side_effect = RemoteGatewayError("subscription.cancel", "boom")

        with pytest.raises(RemoteGatewayError):
            sub.cancel(gateway)

        reloaded = Subscription.objects.get(pk=sub.pk)
        assert reloaded.status == S.ACTIVE
        assert reloaded.ends_at is None

    def test_cancel_now(self, gateway) -> None:
        sub = SubscriptionFactory(status=S.ACTIVE)
        before = _now()

        sub.cancel_now(gateway)

        gateway.cancel_subscription.assert_called_once_with(
            sub.razorpay_subscription_id, cancel_at_cycle_end=False
        )
        assert sub.status == S.CANCELLED
        assert before <= sub.ends_at <= _now()

    def test_as_razorpay_subscription(self, gateway) -> None:
        sub = SubscriptionFactory()
        gateway.fetch_subscription.return_value = {"id": sub.razorpay_subscription_id}

        assert sub.as_razorpay_subscription(gateway)["id"] == sub.razorpay_subscription_id
