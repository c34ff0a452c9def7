"""
Stripe Gateway
Thin wrapper over the Stripe SDK bound to one secret key and API version.

Credentials travel with every request (`api_key=`, `stripe_version=`) instead of
being set on the `stripe` module, so several gateways can coexist in one process.
"""

import logging
from functools import lru_cache
from typing import Any

import stripe

from src.config import Config
from src.utils.exceptions import SignatureVerificationError, UpstreamProviderError

logger = logging.getLogger(__name__)


def _provider_message(error: stripe.StripeError) -> str:
    return getattr(error, "user_message", None) or str(error) or "Stripe request failed"


class StripeGateway:
    """Stripe operations used by the billing flow"""

    def __init__(self, api_key: str, api_version: str | None = None):
        if not api_key:
            raise ValueError("Stripe secret key is required")
        self.api_key = api_key
        self.api_version = api_version

    def _request_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {"api_key": self.api_key}
        if self.api_version:
            options["stripe_version"] = self.api_version
        return options

    def _call(self, operation: str, fn, *args, **params):
        try:
            return fn(*args, **params, **self._request_options())
        except stripe.StripeError as e:
            logger.error(f"Stripe error during {operation}: {e}")
            raise UpstreamProviderError(_provider_message(e), operation=operation) from e

    # ==================== Customers ====================

    def create_customer(self, email: str | None, metadata: dict[str, str]):
        params: dict[str, Any] = {"metadata": metadata}
        if email:
            params["email"] = email
        customer = self._call("create_customer", stripe.Customer.create, **params)
        logger.info(f"Stripe customer created: {customer.id}")
        return customer

    # ==================== Checkout ====================

    def create_checkout_session(self, **params):
        return self._call("create_checkout_session", stripe.checkout.Session.create, **params)

    def retrieve_checkout_session(self, session_id: str):
        return self._call(
            "retrieve_checkout_session", stripe.checkout.Session.retrieve, session_id
        )

    # ==================== Subscriptions ====================

    def retrieve_subscription(self, subscription_id: str):
        return self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)

    # ==================== Billing portal ====================

    def create_billing_portal_session(self, customer_id: str, return_url: str):
        return self._call(
            "create_billing_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )

    # ==================== Webhooks ====================

    @staticmethod
    def construct_event(payload: bytes, signature: str, secret: str):
        """Verify the signature header and parse the event payload."""
        try:
            return stripe.Webhook.construct_event(payload, signature, secret)
        except stripe.SignatureVerificationError as e:
            raise SignatureVerificationError(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            raise SignatureVerificationError(f"Invalid webhook payload: {e}") from e


@lru_cache(maxsize=1)
def get_stripe_gateway() -> StripeGateway:
    """Process-wide gateway built from Config"""
    if not Config.STRIPE_SECRET_KEY:
        raise UpstreamProviderError("Stripe is not configured", operation="configure")
    logger.info(f"Stripe gateway initialized (API version {Config.STRIPE_API_VERSION})")
    return StripeGateway(Config.STRIPE_SECRET_KEY, Config.STRIPE_API_VERSION)
