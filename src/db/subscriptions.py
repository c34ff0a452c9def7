#!/usr/bin/env python3
"""
Subscription Records Database Module
One row per user in the `subscriptions` table, written by the billing service
with the service-role client and read by users through RLS.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from src.config.supabase_config import execute_with_retry
from src.schemas.billing import SubscriptionRecord, SubscriptionStatus
from src.utils.exceptions import SubscriptionStoreError
from src.utils.sentry_context import capture_database_error

logger = logging.getLogger(__name__)

SUBSCRIPTIONS_TABLE = "subscriptions"

# Columns the service is allowed to write; anything else in a payload is dropped
WRITABLE_FIELDS = (
    "stripe_customer_id",
    "stripe_subscription_id",
    "status",
    "price_id",
    "current_period_end",
)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
    clean = {key: fields[key] for key in WRITABLE_FIELDS if key in fields}
    if isinstance(clean.get("status"), SubscriptionStatus):
        clean["status"] = clean["status"].value
    return clean


def _to_record(row: dict[str, Any] | None) -> SubscriptionRecord | None:
    if not row:
        return None
    return SubscriptionRecord.model_validate(row)


def _store_failure(operation: str, error: Exception, **details) -> SubscriptionStoreError:
    logger.error(f"Subscription store {operation} failed: {error}", exc_info=True)
    capture_database_error(error, operation=operation, table=SUBSCRIPTIONS_TABLE, details=details)
    return SubscriptionStoreError(f"Failed to {operation.replace('_', ' ')}: {error}")


def get_latest_subscription(user_id: str) -> SubscriptionRecord | None:
    """
    Fetch the most recent subscription record for a user

    Args:
        user_id: Auth user ID

    Returns:
        The newest record, or None if the user has never started checkout
    """
    try:

        def _get_latest(client):
            return (
                client.table(SUBSCRIPTIONS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(1)
                .execute()
            )

        result = execute_with_retry(_get_latest, operation_name="get_latest_subscription")
        return _to_record(result.data[0]) if result.data else None

    except Exception as e:
        raise _store_failure("get_latest_subscription", e, user_id=user_id) from e


def upsert_subscription(user_id: str, fields: dict[str, Any]) -> SubscriptionRecord:
    """
    Insert or update the user's record in a single statement

    All fields are written together so readers never observe a partial update.

    Args:
        user_id: Auth user ID (conflict target)
        fields: Column values to write

    Returns:
        The stored record
    """
    payload = {"user_id": user_id, **_clean_fields(fields), "updated_at": _now_iso()}

    try:

        def _upsert(client):
            return (
                client.table(SUBSCRIPTIONS_TABLE)
                .upsert(payload, on_conflict="user_id")
                .execute()
            )

        result = execute_with_retry(_upsert, operation_name="upsert_subscription")

    except Exception as e:
        raise _store_failure("upsert_subscription", e, user_id=user_id) from e

    if not result.data:
        raise SubscriptionStoreError(f"Upsert returned no row for user {user_id}")

    logger.info(
        f"Upserted subscription for user {user_id}: status={payload.get('status')}, "
        f"subscription={payload.get('stripe_subscription_id')}"
    )
    return _to_record(result.data[0])


def update_subscription_by_customer(
    customer_id: str, fields: dict[str, Any]
) -> list[SubscriptionRecord]:
    """
    Update every record linked to a Stripe customer

    Used when an event carries no user id; the customer id is the only link.

    Returns:
        Updated records (empty when no row references the customer)
    """
    payload = {**_clean_fields(fields), "updated_at": _now_iso()}
    payload.pop("stripe_customer_id", None)

    try:

        def _update(client):
            return (
                client.table(SUBSCRIPTIONS_TABLE)
                .update(payload)
                .eq("stripe_customer_id", customer_id)
                .execute()
            )

        result = execute_with_retry(_update, operation_name="update_subscription_by_customer")

    except Exception as e:
        raise _store_failure("update_subscription_by_customer", e, customer_id=customer_id) from e

    rows = result.data or []
    if rows:
        logger.info(f"Updated {len(rows)} subscription row(s) for customer {customer_id}")
    return [_to_record(row) for row in rows]


def ensure_subscription_row(user_id: str, price_id: str | None = None) -> None:
    """
    Insert a placeholder `incomplete` row for the user unless one already exists.

    Gives the conditional customer-id claim a row to lock onto.
    """
    payload = {
        "user_id": user_id,
        "status": SubscriptionStatus.INCOMPLETE.value,
        "price_id": price_id,
        "updated_at": _now_iso(),
    }

    try:

        def _insert_if_absent(client):
            return (
                client.table(SUBSCRIPTIONS_TABLE)
                .upsert(payload, on_conflict="user_id", ignore_duplicates=True)
                .execute()
            )

        execute_with_retry(_insert_if_absent, operation_name="ensure_subscription_row")

    except Exception as e:
        raise _store_failure("ensure_subscription_row", e, user_id=user_id) from e


def claim_customer_id(user_id: str, customer_id: str) -> str:
    """
    Attach a Stripe customer to the user's row only if none is attached yet

    Two concurrent checkouts can each create a customer; the conditional update
    lets exactly one of them win and everybody reuses the winner.

    Returns:
        The customer id now stored on the row (ours or the earlier winner's)
    """
    try:

        def _claim(client):
            return (
                client.table(SUBSCRIPTIONS_TABLE)
                .update({"stripe_customer_id": customer_id, "updated_at": _now_iso()})
                .eq("user_id", user_id)
                .is_("stripe_customer_id", "null")
                .execute()
            )

        result = execute_with_retry(_claim, operation_name="claim_customer_id")

    except Exception as e:
        raise _store_failure("claim_customer_id", e, user_id=user_id) from e

    if result.data:
        return customer_id

    current = get_latest_subscription(user_id)
    if current is None or not current.stripe_customer_id:
        raise SubscriptionStoreError(
            f"Could not attach Stripe customer {customer_id} to user {user_id}: no subscription row"
        )

    if current.stripe_customer_id != customer_id:
        logger.warning(
            f"Concurrent checkout for user {user_id}: reusing customer {current.stripe_customer_id}, "
            f"orphaned Stripe customer {customer_id}"
        )
    return current.stripe_customer_id
