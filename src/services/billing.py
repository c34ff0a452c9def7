#!/usr/bin/env python3
"""
Billing Service
Checkout, webhook ingestion, post-checkout sync and billing portal for the
single-subscription-per-user model.
"""

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from src.config import Config
from src.config.billing_plans import PriceCatalog, build_price_catalog
from src.db.subscriptions import (
    claim_customer_id,
    ensure_subscription_row,
    get_latest_subscription,
)
from src.db.webhook_events import is_event_processed, record_processed_event
from src.schemas.auth import AuthenticatedUser
from src.schemas.billing import SubscriptionStateResponse, SubscriptionStatus
from src.services.reconciliation import (
    ReconciliationResult,
    apply_subscription_snapshot,
    get_stripe_value,
    snapshot_from_subscription,
    stripe_id,
    user_id_from_metadata,
)
from src.services.stripe_gateway import StripeGateway, get_stripe_gateway
from src.utils.exceptions import (
    BillingValidationError,
    CheckoutSessionForbidden,
    CheckoutSessionIncomplete,
    NoBillingCustomer,
    SignatureVerificationError,
    UpstreamProviderError,
)
from src.utils.security_validators import sanitize_for_logging
from src.utils.sentry_context import capture_payment_error

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENTS = ("invoice.paid", "invoice.payment_failed")
CHECKOUT_COMPLETED_EVENT = "checkout.session.completed"


@dataclass
class CheckoutResult:
    url: str
    kind: str = "checkout"
    session_id: str | None = None


@dataclass
class WebhookResult:
    event_id: str
    event_type: str
    handled: bool = False
    duplicate: bool = False
    user_id: str | None = None


class BillingService:
    """Service class for the subscription billing flow"""

    def __init__(
        self,
        gateway: StripeGateway,
        catalog: PriceCatalog | None = None,
        *,
        webhook_secret: str | None = None,
        app_url: str | None = None,
    ):
        self.gateway = gateway
        self.catalog = catalog or build_price_catalog()
        self.webhook_secret = webhook_secret
        self.app_url = (app_url or Config.APP_URL).rstrip("/")

        if not self.webhook_secret:
            logger.warning(
                "STRIPE_WEBHOOK_SECRET not configured - webhook deliveries will be rejected"
            )

        self._webhook_handlers = {
            CHECKOUT_COMPLETED_EVENT: self._handle_checkout_completed,
            **{event_type: self._handle_subscription_event for event_type in SUBSCRIPTION_EVENTS},
            **{event_type: self._handle_invoice_event for event_type in INVOICE_EVENTS},
        }

    # ==================== Redirect targets ====================

    @property
    def success_url(self) -> str:
        # {CHECKOUT_SESSION_ID} is substituted by Stripe
        return f"{self.app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def cancel_url(self) -> str:
        return f"{self.app_url}/pricing?billing=canceled"

    @property
    def portal_return_url(self) -> str:
        return f"{self.app_url}/dashboard/settings?billing=portal_return"

    # ==================== Checkout ====================

    def create_checkout(self, user: AuthenticatedUser, price_id: str | None) -> CheckoutResult:
        """
        Start a subscription checkout for the caller

        Args:
            user: Authenticated caller
            price_id: Requested price; must be in the catalog

        Returns:
            CheckoutResult with the hosted checkout URL, or a portal URL
            (kind="portal") when the user already has an active subscription
        """
        if not self.catalog.is_allowed(price_id):
            logger.warning(
                f"Rejected checkout for user {user.id}: price {sanitize_for_logging(price_id)} "
                "not in catalog"
            )
            raise BillingValidationError("Invalid price")

        plan = self.catalog.get(price_id)

        try:
            latest = get_latest_subscription(user.id)

            # A second checkout would open a second subscription; manage the existing one
            if latest is not None and latest.access and latest.stripe_customer_id:
                logger.info(
                    f"User {user.id} already has a {latest.status.value} subscription; "
                    "redirecting to billing portal"
                )
                portal = self.gateway.create_billing_portal_session(
                    latest.stripe_customer_id, self.portal_return_url
                )
                return CheckoutResult(url=portal.url, kind="portal")

            customer_id = latest.stripe_customer_id if latest is not None else None
            if not customer_id:
                customer_id = self._create_customer(user, price_id)

            subscription_data: dict[str, Any] = {
                "metadata": {"user_id": user.id, "price_id": price_id},
            }
            if plan.trial_period_days:
                subscription_data["trial_period_days"] = plan.trial_period_days

            session = self.gateway.create_checkout_session(
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                allow_promotion_codes=True,
                success_url=self.success_url,
                cancel_url=self.cancel_url,
                client_reference_id=user.id,
                metadata={"user_id": user.id, "price_id": price_id},
                subscription_data=subscription_data,
            )

            logger.info(
                f"Subscription checkout session created: {session.id} for user {user.id} "
                f"({plan.label}, trial_days={plan.trial_period_days or 0})"
            )
            return CheckoutResult(url=session.url, kind="checkout", session_id=session.id)

        except UpstreamProviderError as e:
            capture_payment_error(e, operation="checkout", user_id=user.id)
            raise

    def _create_customer(self, user: AuthenticatedUser, price_id: str) -> str:
        ensure_subscription_row(user.id, price_id)
        customer = self.gateway.create_customer(user.email, metadata={"user_id": user.id})
        return claim_customer_id(user.id, customer.id)

    # ==================== Webhooks ====================

    def handle_webhook(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Verify a Stripe delivery and reconcile the subscription it refers to"""
        if not self.webhook_secret:
            logger.error("Webhook secret not configured - rejecting webhook")
            raise SignatureVerificationError("Webhook secret not configured")
        if not signature:
            logger.error("Missing webhook signature")
            raise SignatureVerificationError("Missing stripe-signature header")

        try:
            event = self.gateway.construct_event(payload, signature, self.webhook_secret)
        except SignatureVerificationError as e:
            logger.error(f"Rejected webhook: {e}")
            raise

        event_id = event["id"]
        event_type = event["type"]
        logger.info(f"Processing webhook: {event_type} (ID: {event_id})")

        handler = self._webhook_handlers.get(event_type)
        if handler is None:
            logger.info(f"Ignoring unhandled webhook event type: {event_type}")
            return WebhookResult(event_id=event_id, event_type=event_type)

        if is_event_processed(event_id):
            logger.warning(f"Duplicate webhook event detected, skipping: {event_id}")
            return WebhookResult(
                event_id=event_id, event_type=event_type, handled=True, duplicate=True
            )

        try:
            result = handler(event["data"]["object"])
        except Exception as e:
            logger.error(f"Webhook processing error for {event_type} ({event_id}): {e}", exc_info=True)
            capture_payment_error(
                e, operation="webhook", details={"event_id": event_id, "event_type": event_type}
            )
            raise

        user_id = result.user_id if result is not None else None

        # Recorded only after success so failed deliveries are retried by Stripe
        record_processed_event(
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            metadata={
                "livemode": bool(get_stripe_value(event, "livemode")),
                "matched": bool(result and result.matched),
            },
        )

        return WebhookResult(
            event_id=event_id, event_type=event_type, handled=True, user_id=user_id
        )

    def _handle_subscription_event(self, subscription) -> ReconciliationResult:
        """customer.subscription.created / updated / deleted"""
        snapshot = snapshot_from_subscription(subscription)
        logger.info(
            f"Reconciling subscription {snapshot.subscription_id}: status={snapshot.status.value}, "
            f"customer={snapshot.customer_id}"
        )
        return apply_subscription_snapshot(snapshot)

    def _handle_invoice_event(self, invoice) -> ReconciliationResult | None:
        """
        invoice.paid / invoice.payment_failed

        The invoice only references the subscription, so fetch its current state
        from Stripe and reconcile that.
        """
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(
                f"Invoice {get_stripe_value(invoice, 'id')} is not for a subscription, skipping"
            )
            return None

        subscription = self.gateway.retrieve_subscription(subscription_id)
        return self._handle_subscription_event(subscription)

    @staticmethod
    def _invoice_subscription_id(invoice) -> str | None:
        subscription_id = stripe_id(get_stripe_value(invoice, "subscription"))
        if subscription_id:
            return subscription_id

        # API versions from 2025 nest the reference under invoice.parent
        parent = get_stripe_value(invoice, "parent")
        details = get_stripe_value(parent, "subscription_details")
        return stripe_id(get_stripe_value(details, "subscription"))

    def _handle_checkout_completed(self, session) -> ReconciliationResult | None:
        """
        checkout.session.completed

        Links user, customer and subscription as soon as the payment page closes,
        ahead of the subscription events.
        """
        if get_stripe_value(session, "mode") not in (None, "subscription"):
            return None

        subscription_id = stripe_id(get_stripe_value(session, "subscription"))
        if not subscription_id:
            logger.info(
                f"Checkout session {get_stripe_value(session, 'id')} has no subscription yet, skipping"
            )
            return None

        owner = user_id_from_metadata(get_stripe_value(session, "metadata")) or get_stripe_value(
            session, "client_reference_id"
        )

        subscription = self.gateway.retrieve_subscription(subscription_id)
        snapshot = snapshot_from_subscription(subscription)
        return apply_subscription_snapshot(snapshot, user_id=owner)

    # ==================== Post-checkout sync ====================

    def sync_checkout_session(self, user: AuthenticatedUser, session_id: str | None) -> SubscriptionStatus:
        """
        Pull the subscription behind a finished checkout and store it for the caller

        Returns:
            The reconciled status
        """
        if not session_id:
            raise BillingValidationError("Missing session_id")

        try:
            session = self.gateway.retrieve_checkout_session(session_id)

            customer_id = stripe_id(get_stripe_value(session, "customer"))
            if not customer_id:
                raise NoBillingCustomer("No customer on session")

            session_owner = user_id_from_metadata(
                get_stripe_value(session, "metadata")
            ) or get_stripe_value(session, "client_reference_id")
            if session_owner and session_owner != user.id:
                logger.warning(
                    f"User {user.id} tried to sync checkout session "
                    f"{sanitize_for_logging(session_id)} owned by {session_owner}"
                )
                raise CheckoutSessionForbidden("Checkout session belongs to another user")

            subscription_id = stripe_id(get_stripe_value(session, "subscription"))
            if not subscription_id:
                raise CheckoutSessionIncomplete()

            subscription = self.gateway.retrieve_subscription(subscription_id)

        except UpstreamProviderError as e:
            capture_payment_error(e, operation="sync", user_id=user.id)
            raise

        result = apply_subscription_snapshot(snapshot_from_subscription(subscription), user_id=user.id)
        logger.info(f"Synced checkout session for user {user.id}: status={result.record.status.value}")
        return result.record.status

    # ==================== Billing portal ====================

    def create_portal_session(self, user: AuthenticatedUser) -> str:
        """Billing portal URL for the caller's Stripe customer"""
        latest = get_latest_subscription(user.id)
        if latest is None or not latest.stripe_customer_id:
            raise NoBillingCustomer()

        try:
            portal = self.gateway.create_billing_portal_session(
                latest.stripe_customer_id, self.portal_return_url
            )
        except UpstreamProviderError as e:
            capture_payment_error(
                e,
                operation="portal",
                user_id=user.id,
                details={"customer_id": latest.stripe_customer_id},
            )
            raise

        logger.info(f"Billing portal session created for user {user.id}")
        return portal.url

    # ==================== Subscription state ====================

    def get_subscription_state(self, user: AuthenticatedUser) -> SubscriptionStateResponse:
        """Caller's status and derived access; no row means no access"""
        latest = get_latest_subscription(user.id)
        if latest is None:
            return SubscriptionStateResponse(
                status=SubscriptionStatus.NONE,
                access=False,
                plan=self.catalog.plan_label(None),
            )

        return SubscriptionStateResponse(
            status=latest.status,
            access=latest.access,
            plan=self.catalog.plan_label(latest.price_id),
            price_id=latest.price_id,
            current_period_end=latest.current_period_end,
            has_billing_customer=bool(latest.stripe_customer_id),
        )


@lru_cache(maxsize=1)
def get_billing_service() -> BillingService:
    """Process-wide BillingService, used as the FastAPI dependency"""
    return BillingService(
        get_stripe_gateway(),
        build_price_catalog(),
        webhook_secret=Config.STRIPE_WEBHOOK_SECRET,
        app_url=Config.APP_URL,
    )
