"""Billing app configuration."""

from django.apps import AppConfig


class BillingConfig(AppConfig):
    """Razorpay subscriptions and webhook handling."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.billing"
    verbose_name = "Razorpay billing"
