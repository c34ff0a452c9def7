#!/usr/bin/env python3
"""
Webhook Event Tracking Database Module
Remembers which Stripe events were reconciled so redeliveries can be acknowledged
without repeating the provider round-trips.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from src.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS_TABLE = "stripe_webhook_events"

_missing_table_warning_logged = False


def _maybe_log_missing_table_hint(error: Exception) -> None:
    """
    Emit a single actionable warning when the stripe_webhook_events table
    is missing from the Supabase schema cache so operators know to run migrations.
    """
    global _missing_table_warning_logged

    if _missing_table_warning_logged:
        return

    message = str(error)
    if WEBHOOK_EVENTS_TABLE in message or "PGRST205" in message:
        logger.warning(
            "stripe_webhook_events table is unavailable in Supabase (likely migrations not applied "
            "or schema cache stale). Apply supabase/migrations/20260110000100_stripe_webhook_events.sql "
            "then run NOTIFY pgrst, 'reload schema'; to refresh PostgREST."
        )
        _missing_table_warning_logged = True


def is_event_processed(event_id: str) -> bool:
    """
    Check if a webhook event has already been processed

    Args:
        event_id: Stripe event ID (evt_xxx)

    Returns:
        True if event was already processed, False otherwise
    """
    try:

        def _check_event(client):
            return (
                client.table(WEBHOOK_EVENTS_TABLE)
                .select("event_id")
                .eq("event_id", event_id)
                .execute()
            )

        result = execute_with_retry(_check_event, operation_name="is_event_processed")
        return bool(result.data)

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error checking if event is processed: {e}", exc_info=True)
        # Reconciliation is idempotent, so processing twice is safe
        return False


def record_processed_event(
    event_id: str,
    event_type: str,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> bool:
    """
    Record that a webhook event has been processed

    Args:
        event_id: Stripe event ID (evt_xxx)
        event_type: Stripe event type (e.g., invoice.paid)
        user_id: User the event was attributed to (if any)
        metadata: Additional event metadata for debugging

    Returns:
        True if recorded successfully, False otherwise
    """
    try:

        def _record_event(client):
            return (
                client.table(WEBHOOK_EVENTS_TABLE)
                .upsert(
                    {
                        "event_id": event_id,
                        "event_type": event_type,
                        "user_id": user_id,
                        "metadata": metadata or {},
                        "processed_at": datetime.now(UTC).isoformat(),
                    },
                    on_conflict="event_id",
                )
                .execute()
            )

        result = execute_with_retry(_record_event, operation_name="record_processed_event")

        if result.data:
            logger.info(f"Recorded processed webhook event: {event_id} ({event_type})")
            return True

        logger.error(f"Failed to record webhook event: {event_id}")
        return False

    except Exception as e:
        _maybe_log_missing_table_hint(e)
        logger.error(f"Error recording processed event: {e}", exc_info=True)
        return False
