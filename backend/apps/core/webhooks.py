"""
Delivery ledger helpers for idempotent webhook processing.
"""

from django.db import IntegrityError, transaction

from apps.core.logging import get_logger
from apps.core.models import ProcessedWebhook

logger = get_logger(__name__)


def is_webhook_processed(source: str, event_id: str | None) -> bool:
    """
    Check whether a delivery has already been applied.

    Deliveries without an event id can never be matched, so they
    are always treated as new.
    """
    if not event_id:
        return False
    return ProcessedWebhook.objects.filter(source=source, event_id=event_id).exists()


def mark_webhook_processed(source: str, event_id: str | None) -> bool:
    """
    Record a delivery as applied.

    Relies on the unique constraint when two deliveries of the same
    event race each other.

    Returns:
        True if recorded, False if it was already present or has no id.
    """
    if not event_id:
        return False
    try:
        with transaction.atomic():
            ProcessedWebhook.objects.create(source=source, event_id=event_id)
    except IntegrityError:
        logger.debug("webhook_already_processed", source=source, event_id=event_id)
        return False
    return True
