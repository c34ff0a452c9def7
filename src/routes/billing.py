#!/usr/bin/env python3
"""
Billing Routes
Subscription checkout, Stripe webhooks, post-checkout sync and billing portal
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from src.schemas.auth import AuthenticatedUser
from src.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    PortalResponse,
    SubscriptionStateResponse,
    SyncRequest,
    SyncResponse,
    WebhookAck,
)
from src.security.deps import get_current_user
from src.services.billing import BillingService, get_billing_service
from src.utils.exceptions import APIExceptions, BillingError
from src.utils.security_validators import sanitize_for_logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """
    Start a Stripe Checkout session for one of the allowed prices

    Returns the hosted checkout URL. Users who already hold an active, trialing
    or past_due subscription get a billing portal URL instead (kind="portal").
    """
    try:
        result = await run_in_threadpool(service.create_checkout, user, body.price_id)
        return CheckoutResponse(url=result.url, kind=result.kind)

    except BillingError as e:
        raise APIExceptions.from_billing_error(e) from e

    except Exception as e:
        logger.error(f"Error creating checkout for user {user.id}: {e}", exc_info=True)
        raise APIExceptions.internal_error("create checkout session") from e


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="stripe-signature"),
    service: BillingService = Depends(get_billing_service),
):
    """
    Stripe webhook endpoint

    Handled events:
    - checkout.session.completed
    - customer.subscription.created / updated / deleted
    - invoice.paid / invoice.payment_failed

    Any verification or processing failure answers 400 so Stripe redelivers.
    The signature is checked against the raw body, so it must be read unparsed.
    """
    payload = await request.body()

    try:
        result = await run_in_threadpool(service.handle_webhook, payload, stripe_signature)
        return WebhookAck(received=True, duplicate=result.duplicate)

    except Exception as e:
        message = e.message if isinstance(e, BillingError) else str(e) or "Webhook error"
        logger.error(f"Stripe webhook rejected: {sanitize_for_logging(message)}")
        return JSONResponse(status_code=400, content={"error": message})


@router.post("/sync", response_model=SyncResponse)
async def sync_checkout(
    body: SyncRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """
    Reconcile the subscription behind a completed checkout session right away

    Called by the post-checkout page so access does not wait for webhook delivery.
    """
    try:
        status = await run_in_threadpool(service.sync_checkout_session, user, body.session_id)
        return SyncResponse(ok=True, status=status)

    except BillingError as e:
        raise APIExceptions.from_billing_error(e) from e

    except Exception as e:
        logger.error(
            f"Error syncing checkout session {sanitize_for_logging(body.session_id)}: {e}",
            exc_info=True,
        )
        raise APIExceptions.internal_error("sync checkout session") from e


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Open the Stripe billing portal for the caller's customer"""
    try:
        url = await run_in_threadpool(service.create_portal_session, user)
        return PortalResponse(url=url)

    except BillingError as e:
        raise APIExceptions.from_billing_error(e) from e

    except Exception as e:
        logger.error(f"Error creating portal session for user {user.id}: {e}", exc_info=True)
        raise APIExceptions.internal_error("create billing portal session") from e


@router.get("/subscription", response_model=SubscriptionStateResponse)
async def get_subscription(
    user: AuthenticatedUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Current subscription status and derived access for the caller"""
    try:
        return await run_in_threadpool(service.get_subscription_state, user)

    except BillingError as e:
        raise APIExceptions.from_billing_error(e) from e

    except Exception as e:
        logger.error(f"Error reading subscription for user {user.id}: {e}", exc_info=True)
        raise APIExceptions.internal_error("read subscription") from e
