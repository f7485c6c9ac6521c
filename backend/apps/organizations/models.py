"""
Organizations models - the billable tenant.
"""

from django.db import models

from apps.billing.billable import Billable
from apps.core.models import TimestampedModel


class Organization(Billable, TimestampedModel):
    """
    Customer account that pays for subscriptions.

    Razorpay customer details default from the billing contact fields.
    """

    name = models.CharField(max_length=255)
    slug = models.SlugField(
        max_length=255,
        unique=True,
        help_text="URL-safe identifier, e.g. 'acme-corp'",
    )

    # Billing contact
    email = models.EmailField(blank=True)
    contact = models.CharField(max_length=20, blank=True, help_text="Phone number with country code")

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name

    def get_billing_details(self) -> dict[str, str]:
        return {"name": self.name, "email": self.email, "contact": self.contact}
