"""
Lookup of the billable entity behind a Razorpay customer.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from django.apps import apps
from django.conf import settings

if TYPE_CHECKING:
    from apps.billing.billable import Billable


class BillableRepository(Protocol):
    """Resolves billables by their Razorpay customer id."""

    def get_by_razorpay_id(self, customer_id: str) -> Billable | None: ...


class DjangoBillableRepository:
    """Looks up the model configured as settings.BILLABLE_MODEL."""

    def __init__(self, model_label: str | None = None) -> None:
        self.model = apps.get_model(model_label or settings.BILLABLE_MODEL)

    def get_by_razorpay_id(self, customer_id: str) -> Billable | None:
        if not customer_id:
            return None
        return self.model.objects.filter(razorpay_customer_id=customer_id).first()
