"""
Subscription reconciliation.

Turns a Stripe subscription object into the local record. Extraction and the
merge are pure; `apply_subscription_snapshot` is the only function that touches
the store. Events are applied in arrival order (last write wins), and applying
the same snapshot twice leaves the row unchanged.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from src.db.subscriptions import update_subscription_by_customer, upsert_subscription
from src.schemas.billing import SubscriptionRecord, SubscriptionStatus, normalize_status

logger = logging.getLogger(__name__)

# Checkout writes `user_id`; older sessions carried the Supabase-specific keys
USER_ID_METADATA_KEYS = ("user_id", "supabase_user_id", "supabase_uid")


def get_stripe_value(obj: Any, attr: str) -> Any:
    """
    Safely extract a field from a Stripe object, plain dict or attribute-based object.

    Item access comes before attribute access: field names such as `items`
    collide with mapping method names on SDK objects.
    """
    if obj is None:
        return None

    if isinstance(obj, dict):
        return obj.get(attr)

    try:
        return obj[attr]
    except (KeyError, TypeError):
        return getattr(obj, attr, None)


def stripe_id(value: Any) -> str | None:
    """Id of a reference that may be a bare id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    return get_stripe_value(value, "id")


def metadata_to_dict(metadata: Any) -> dict[str, Any]:
    """Convert Stripe metadata object into a plain dictionary."""
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    to_dict = getattr(metadata, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(metadata)


def user_id_from_metadata(metadata: Any) -> str | None:
    values = metadata_to_dict(metadata)
    for key in USER_ID_METADATA_KEYS:
        value = values.get(key)
        if value:
            return str(value)
    return None


def timestamp_to_iso(value: Any) -> str | None:
    """Unix seconds from Stripe to an ISO-8601 UTC string."""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=UTC).isoformat()
    except (TypeError, ValueError, OverflowError):
        logger.warning(f"Ignoring unparseable period end: {value!r}")
        return None


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side subscription state as carried by one event or fetch."""

    subscription_id: str | None
    customer_id: str | None
    status: SubscriptionStatus
    price_id: str | None = None
    current_period_end: str | None = None
    user_id: str | None = None


@dataclass
class ReconciliationResult:
    matched: bool
    user_id: str | None = None
    record: SubscriptionRecord | None = None
    attributed_by: str | None = None  # "user_id", "customer", or None when unmatched


def snapshot_from_subscription(subscription: Any) -> SubscriptionSnapshot:
    """Read the fields we persist from a Stripe subscription object or dict."""
    items = get_stripe_value(subscription, "items")
    item_data = get_stripe_value(items, "data") or []
    first_item = item_data[0] if item_data else None

    price = get_stripe_value(first_item, "price")
    price_id = stripe_id(price)

    # Newer API versions moved the billing period onto the subscription items
    period_end = get_stripe_value(subscription, "current_period_end")
    if period_end is None:
        period_end = get_stripe_value(first_item, "current_period_end")

    return SubscriptionSnapshot(
        subscription_id=get_stripe_value(subscription, "id"),
        customer_id=stripe_id(get_stripe_value(subscription, "customer")),
        status=normalize_status(get_stripe_value(subscription, "status")),
        price_id=price_id,
        current_period_end=timestamp_to_iso(period_end),
        user_id=user_id_from_metadata(get_stripe_value(subscription, "metadata")),
    )


def reconcile_record(
    current: SubscriptionRecord | None, snapshot: SubscriptionSnapshot
) -> dict[str, Any]:
    """
    Next record fields given the stored record and an incoming snapshot.

    The snapshot wins for every field it carries. Fields it lacks are taken
    from `current`, or left out entirely when there is no current record, so
    a partial upsert keeps whatever the row already holds.
    """
    fields = {
        "stripe_customer_id": snapshot.customer_id,
        "stripe_subscription_id": snapshot.subscription_id,
        "status": snapshot.status.value,
        "price_id": snapshot.price_id,
        "current_period_end": snapshot.current_period_end,
    }
    for key, value in list(fields.items()):
        if value is not None:
            continue
        existing = getattr(current, key) if current is not None else None
        if existing is None:
            del fields[key]
        else:
            fields[key] = existing
    return fields


def apply_subscription_snapshot(
    snapshot: SubscriptionSnapshot, user_id: str | None = None
) -> ReconciliationResult:
    """
    Write a snapshot to the store in a single statement, without reading first.

    Owner resolution order:
    1. `user_id` passed by an authenticated caller (pull-sync)
    2. `user_id` from the subscription metadata
    3. The row already holding the snapshot's customer id

    Returns an unmatched result, without raising, when none of these resolve.
    """
    owner = user_id or snapshot.user_id
    fields = reconcile_record(None, snapshot)

    if owner:
        record = upsert_subscription(owner, fields)
        return ReconciliationResult(
            matched=True, user_id=owner, record=record, attributed_by="user_id"
        )

    if not snapshot.customer_id:
        logger.warning(
            f"Subscription {snapshot.subscription_id} has neither user metadata nor customer; skipping"
        )
        return ReconciliationResult(matched=False)

    records = update_subscription_by_customer(snapshot.customer_id, fields)
    if not records:
        logger.warning(
            f"No subscription row for customer {snapshot.customer_id} "
            f"(subscription {snapshot.subscription_id}); nothing to reconcile"
        )
        return ReconciliationResult(matched=False)

    record = records[0]
    logger.info(
        f"Attributed subscription {snapshot.subscription_id} to user {record.user_id} "
        f"via customer {snapshot.customer_id} (metadata had no user_id)"
    )
    return ReconciliationResult(
        matched=True, user_id=record.user_id, record=record, attributed_by="customer"
    )
