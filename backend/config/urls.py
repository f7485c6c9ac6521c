"""
URL configuration for the backend.
"""

from django.urls import path

from apps.billing.webhooks import razorpay_webhook

urlpatterns = [
    # Webhooks - plain view for raw request handling
    path("webhooks/razorpay/", razorpay_webhook, name="razorpay-webhook"),
]
