"""
Core models - shared base classes and utilities.
"""

from django.db import models


class TimestampedModel(models.Model):
    """
    Abstract base model with created_at/updated_at timestamps.
    """

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class ProcessedWebhook(models.Model):
    """
    Ledger of webhook deliveries that have already been applied.

    Razorpay redelivers events until it sees a 2xx, so the same
    event id can arrive more than once.
    """

    source = models.CharField(max_length=50, help_text="Webhook provider, e.g. 'razorpay'")
    event_id = models.CharField(max_length=255, help_text="Provider event id")
    processed_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["source", "event_id"], name="unique_processed_webhook"),
        ]

    def __str__(self) -> str:
        return f"{self.source}:{self.event_id}"
