"""
Shared pytest fixtures for all tests.

Factories
---------
Import factories directly from their modules:

    from tests.organizations.factories import OrganizationFactory
    from tests.billing.factories import SubscriptionFactory

Razorpay is never called for real: the `gateway` fixture is a mock
shaped like RazorpayGateway.
"""

from unittest.mock import MagicMock

import pytest

from apps.billing.razorpay_client import RazorpayGateway


@pytest.fixture
def gateway() -> MagicMock:
    """Mock Razorpay gateway; configure return values per test."""
    return MagicMock(spec=RazorpayGateway)

