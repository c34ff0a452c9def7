import os

# Config reads the environment at import time
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-service-role-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_123")
os.environ.setdefault("APP_URL", "https://crm.example.com")
os.environ["SENTRY_ENABLED"] = "false"

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

from src.schemas.auth import AuthenticatedUser  # noqa: E402
from src.services.stripe_gateway import StripeGateway  # noqa: E402
from tests.helpers.fake_supabase import FakeSupabase  # noqa: E402


@pytest.fixture
def fake_supabase(monkeypatch):
    """Route every Supabase call through an in-memory client"""
    import src.config.supabase_config as supabase_config

    sb = FakeSupabase()
    monkeypatch.setattr(supabase_config, "get_supabase_client", lambda: sb)
    yield sb
    sb.clear_all()


@pytest.fixture
def user():
    return AuthenticatedUser(id="8d7f7c2e-0b7a-4f7e-9a57-1f6f5b2d3c11", email="agent@example.com")


@pytest.fixture
def other_user():
    return AuthenticatedUser(id="0c1d2e3f-4a5b-4c6d-8e7f-9a0b1c2d3e4f", email="other@example.com")


@pytest.fixture
def gateway():
    """Stripe gateway double; webhook signatures are still verified for real"""
    mock = MagicMock(spec=StripeGateway)
    mock.construct_event.side_effect = StripeGateway.construct_event
    mock.create_customer.return_value = MagicMock(id="cus_new")
    mock.create_checkout_session.return_value = MagicMock(
        id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    mock.create_billing_portal_session.return_value = MagicMock(
        url="https://billing.stripe.com/p/session/test_123"
    )
    return mock
