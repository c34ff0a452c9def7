"""
Sentry error context utilities for enhanced error tracking and reporting.

Helpers that attach structured context to errors captured by Sentry. When the
SDK was never initialised (no DSN) the calls are no-ops inside sentry_sdk.
"""

import logging
from typing import Any

import sentry_sdk

logger = logging.getLogger(__name__)


def capture_error(
    exception: Exception,
    context_type: str | None = None,
    context_data: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
) -> str | None:
    """
    Capture an exception to Sentry with structured context.

    Args:
        exception: The exception to capture
        context_type: Type of context for the error
        context_data: Additional context information
        tags: Dictionary of tags for filtering

    Returns:
        Event ID if captured, None if Sentry is disabled
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if context_type and context_data:
                scope.set_context(context_type, context_data)
            for key, value in (tags or {}).items():
                scope.set_tag(key, str(value))
            return sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.warning(f"Failed to capture exception to Sentry: {e}")
        return None


def capture_database_error(
    exception: Exception,
    operation: str,
    table: str,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a database operation error with standard context.

    Args:
        exception: The exception to capture
        operation: Operation name (e.g., 'upsert_subscription')
        table: Table name
        details: Additional operation details
    """
    context_data = {
        "operation": operation,
        "table": table,
    }
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="database",
        context_data=context_data,
        tags={"operation": operation, "table": table},
    )


def capture_payment_error(
    exception: Exception,
    operation: str,
    provider: str = "stripe",
    user_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> str | None:
    """
    Capture a payment-related error with standard context.

    Args:
        exception: The exception to capture
        operation: Payment operation (e.g., 'checkout', 'portal', 'webhook')
        provider: Payment provider (default: 'stripe')
        user_id: User ID if applicable
        details: Additional details (customer ID, subscription ID, etc.)
    """
    context_data = {
        "operation": operation,
        "provider": provider,
    }
    if user_id:
        context_data["user_id"] = user_id
    if details:
        context_data.update(details)

    return capture_error(
        exception,
        context_type="payment",
        context_data=context_data,
        tags={"operation": operation, "provider": provider},
    )
