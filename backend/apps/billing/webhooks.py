"""
Razorpay webhook handler.

Handles incoming webhooks from Razorpay for subscription events.
This is a plain Django view for raw request handling needed to verify
Razorpay signatures.
"""

import json
from collections.abc import Callable
from typing import Any

from django.db import transaction
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.billing.exceptions import RemoteGatewayError, SignatureInvalid, SubscriptionNotFound
from apps.billing.models import Subscription, from_timestamp
from apps.billing.razorpay_client import RazorpayGateway, get_gateway
from apps.billing.repositories import BillableRepository, DjangoBillableRepository
from apps.core.logging import bind_contextvars, clear_contextvars, get_logger
from apps.core.webhooks import is_webhook_processed, mark_webhook_processed
from config.settings.base import settings

logger = get_logger(__name__)

WEBHOOK_SOURCE = "razorpay"
HANDLED = "Webhook Handled"

Handler = Callable[[dict], HttpResponse]
Transition = Callable[[Subscription, dict], Any]


class WebhookDispatcher:
    """
    Verifies Razorpay deliveries and routes events to handlers.

    Handlers live in an explicit event-name table; events without an
    entry get an empty 200 so Razorpay stops retrying them.
    """

    def __init__(
        self,
        gateway: RazorpayGateway,
        secret: str,
        billables: BillableRepository,
    ) -> None:
        self.gateway = gateway
        self.secret = secret
        self.billables = billables
        self.handlers: dict[str, Handler] = {
            "subscription.authenticated": self.handle_subscription_authenticated,
            "subscription.activated": self.handle_subscription_activated,
            "subscription.charged": self.handle_subscription_charged,
            "subscription.pending": self.handle_subscription_pending,
            "subscription.halted": self.handle_subscription_halted,
            "subscription.cancelled": self.handle_subscription_cancelled,
            "subscription.completed": self.handle_subscription_completed,
        }

    def register(self, event: str, handler: Handler) -> None:
        self.handlers[event] = handler

    def handle(self, body: bytes, signature: str | None, event_id: str | None = None) -> HttpResponse:
        """
        Verify and dispatch a single delivery.

        Raises:
            SignatureInvalid: Before anything is read or written.
        """
        if not signature:
            raise SignatureInvalid("missing signature")
        self.gateway.verify_webhook_signature(body, signature, self.secret)

        if is_webhook_processed(WEBHOOK_SOURCE, event_id):
            logger.info("razorpay_webhook_duplicate", event_id=event_id)
            return HttpResponse()

        try:
            payload = json.loads(body)
        except ValueError as e:
            logger.warning("razorpay_webhook_invalid_payload", error=str(e))
            return HttpResponse()

        if not isinstance(payload, dict) or payload.get("entity") != "event":
            # Only event deliveries are configured; anything else is ignored
            logger.info("razorpay_webhook_ignored")
            return HttpResponse()

        event = payload.get("event", "")
        bind_contextvars(**{"razorpay.event": event})
        logger.info("razorpay_webhook_received", event_type=event)

        handler = self.handlers.get(event, self.handle_missing)
        response = handler(payload)

        mark_webhook_processed(WEBHOOK_SOURCE, event_id)
        return response

    def handle_missing(self, payload: dict) -> HttpResponse:
        logger.debug("razorpay_webhook_unhandled_event", event_type=payload.get("event"))
        return HttpResponse()

    # Subscription events

    def handle_subscription_authenticated(self, payload: dict) -> HttpResponse:
        return self._apply(payload, lambda sub, entity: sub.mark_as_authenticated())

    def handle_subscription_activated(self, payload: dict) -> HttpResponse:
        return self._apply(payload, lambda sub, entity: sub.mark_as_activated(entity))

    def handle_subscription_charged(self, payload: dict) -> HttpResponse:
        return self._apply(payload, lambda sub, entity: sub.mark_as_charged(entity))

    def handle_subscription_pending(self, payload: dict) -> HttpResponse:
        return self._apply(payload, lambda sub, entity: sub.mark_as_pending(entity))

    def handle_subscription_halted(self, payload: dict) -> HttpResponse:
        return self._apply(payload, lambda sub, entity: sub.mark_as_halted(entity))

    def handle_subscription_cancelled(self, payload: dict) -> HttpResponse:
        def cancel(subscription: Subscription, entity: dict) -> None:
            if subscription.is_cancellable():
                subscription.mark_as_cancelled(from_timestamp(entity.get("ended_at")))

        return self._apply(payload, cancel)

    def handle_subscription_completed(self, payload: dict) -> HttpResponse:
        def complete(subscription: Subscription, entity: dict) -> None:
            if subscription.is_cancellable():
                subscription.mark_as_completed(from_timestamp(entity.get("ended_at")))

        return self._apply(payload, complete)

    def _apply(self, payload: dict, transition: Transition) -> HttpResponse:
        """
        Run a transition against the locked local subscription.

        A delivery for a subscription we do not know cannot be fixed by
        retrying, so it is logged and acknowledged.
        """
        try:
            entity = payload["payload"]["subscription"]["entity"]
        except (KeyError, TypeError):
            logger.warning("razorpay_webhook_missing_subscription", event_type=payload.get("event"))
            return HttpResponse()
        if not isinstance(entity, dict):
            logger.warning(
                "razorpay_webhook_missing_subscription",
                event_type=payload.get("event"),
                entity_type=type(entity).__name__,
            )
            return HttpResponse()

        try:
            with transaction.atomic():
                subscription = self._find_subscription(entity)
                transition(subscription, entity)
        except SubscriptionNotFound as e:
            logger.warning(
                "razorpay_webhook_subscription_not_found",
                subscription_id=e.razorpay_subscription_id,
                customer_id=entity.get("customer_id"),
            )
        else:
            logger.info(
                "razorpay_webhook_applied",
                subscription_id=subscription.razorpay_subscription_id,
                status=subscription.status,
            )

        return HttpResponse(HANDLED)

    def _find_subscription(self, entity: dict) -> Subscription:
        razorpay_id = entity.get("id", "")
        queryset = Subscription.objects.select_for_update()

        customer_id = entity.get("customer_id")
        if customer_id:
            owner = self.billables.get_by_razorpay_id(customer_id)
            if owner is None:
                raise SubscriptionNotFound(razorpay_id)
            queryset = queryset.filter(owner_id=owner.pk)

        subscription = queryset.filter(razorpay_subscription_id=razorpay_id).first()
        if subscription is None:
            raise SubscriptionNotFound(razorpay_id)
        return subscription


def get_webhook_dispatcher() -> WebhookDispatcher:
    return WebhookDispatcher(
        gateway=get_gateway(),
        secret=settings.RAZORPAY_WEBHOOK_SECRET,
        billables=DjangoBillableRepository(),
    )


@csrf_exempt
@require_POST
def razorpay_webhook(request: HttpRequest) -> HttpResponse:
    """
    Handle Razorpay webhook events.

    Verifies signature and dispatches to the matching handler.
    """
    signature = request.headers.get("X-Razorpay-Signature")
    event_id = request.headers.get("X-Razorpay-Event-Id")

    if not signature:
        logger.warning("razorpay_webhook_missing_signature")
        return HttpResponse(status=400)

    if not settings.RAZORPAY_WEBHOOK_SECRET:
        logger.error("razorpay_webhook_secret_not_configured")
        return HttpResponse(status=500)

    bind_contextvars(**{"razorpay.event_id": event_id})
    try:
        return get_webhook_dispatcher().handle(request.body, signature, event_id)
    except SignatureInvalid as e:
        logger.warning("razorpay_webhook_invalid_signature", error=str(e))
        return HttpResponse(status=400)
    except RemoteGatewayError:
        logger.exception("razorpay_webhook_gateway_error")
        return HttpResponse(status=500)
    except Exception:
        logger.exception("razorpay_webhook_handler_error")
        # Return 500 so Razorpay will retry
        return HttpResponse(status=500)
    finally:
        clear_contextvars()
