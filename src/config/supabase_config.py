import logging
import os
import time

import httpx
import sentry_sdk
from supabase import Client, create_client
from supabase.client import ClientOptions

from src.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds

CONNECTION_TEST_TABLE = "subscriptions"


def get_supabase_client() -> Client:
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    # Check if error is stale (>60s old), retry if so
    if _last_error is not None:
        time_since_error = time.time() - _last_error_time
        if time_since_error < ERROR_CACHE_TTL:
            retry_in = int(ERROR_CACHE_TTL - time_since_error)
            logger.debug(
                f"Supabase client unavailable (retry in {retry_in}s). "
                f"Last error: {_last_error}"
            )
            raise RuntimeError(
                f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
            ) from _last_error
        else:
            logger.info("Error cache expired, retrying Supabase initialization...")
            _last_error = None
            _last_error_time = 0

    try:
        Config.validate()

        url_value = Config.SUPABASE_URL
        if url_value:
            masked_url = url_value[:30] + "..." if len(url_value) > 30 else url_value
            logger.info(f"Initializing Supabase client with URL: {masked_url}")
        else:
            logger.error("SUPABASE_URL is not set or empty")

        if not Config.SUPABASE_URL:
            raise RuntimeError(
                "SUPABASE_URL environment variable is not set. "
                "Please configure it with your Supabase project URL (e.g., https://xxxxx.supabase.co)"
            )
        if not Config.SUPABASE_URL.startswith(("http://", "https://")):
            raise RuntimeError(
                f"SUPABASE_URL must start with 'http://' or 'https://'. "
                f"Current value: '{Config.SUPABASE_URL}'. "
                f"Expected: 'https://{Config.SUPABASE_URL}'"
            )

        postgrest_base_url = f"{Config.SUPABASE_URL}/rest/v1"

        # Serverless deployments get a smaller pool to avoid exhausting connections
        is_serverless = os.getenv("VERCEL") or os.getenv("AWS_LAMBDA_FUNCTION_NAME")
        if is_serverless:
            max_conn, keepalive_conn = 20, 5
            logger.info("Using serverless-optimized connection pool settings")
        else:
            max_conn, keepalive_conn = 50, 20
            logger.info("Using container-optimized connection pool settings")

        # base_url and auth headers are required for postgrest relative paths
        httpx_client = httpx.Client(
            base_url=postgrest_base_url,
            headers={
                "apikey": Config.SUPABASE_KEY,
                "Authorization": f"Bearer {Config.SUPABASE_KEY}",
            },
            timeout=httpx.Timeout(30.0, connect=10.0),
            limits=httpx.Limits(
                max_connections=max_conn,
                max_keepalive_connections=keepalive_conn,
                keepalive_expiry=60.0,
            ),
            http2=True,
        )

        _supabase_client = create_client(
            supabase_url=Config.SUPABASE_URL,
            supabase_key=Config.SUPABASE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=30,
                schema="public",
                headers={"X-Client-Info": f"crm-billing-sync/{Config.APP_VERSION}"},
            ),
        )

        # Route all table operations through the pooled HTTP/2 client
        if hasattr(_supabase_client, "postgrest") and hasattr(_supabase_client.postgrest, "session"):
            _supabase_client.postgrest.session = httpx_client
            logger.info(
                "Configured Supabase client with HTTP/2 connection pooling (base_url: %s)",
                postgrest_base_url,
            )

        _test_connection_internal(_supabase_client)

        return _supabase_client

    except Exception as e:
        _supabase_client = None
        _last_error = e
        _last_error_time = time.time()

        logger.error(
            f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
            exc_info=True,
        )

        with sentry_sdk.new_scope() as scope:
            scope.set_context(
                "supabase_config",
                {
                    "supabase_url_set": bool(Config.SUPABASE_URL),
                    "supabase_key_set": bool(Config.SUPABASE_KEY),
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                },
            )
            scope.set_tag("component", "supabase_client")
            scope.set_tag("initialization_phase", "get_supabase_client")
            sentry_sdk.capture_exception(e)

        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def _test_connection_internal(client: Client) -> bool:
    """
    Test database connection using the provided client directly.

    Args:
        client: The Supabase client instance to test

    Returns:
        True if connection is successful

    Raises:
        RuntimeError: If connection test fails
    """
    try:
        client.table(CONNECTION_TEST_TABLE).select("user_id").limit(1).execute()
        logger.info("Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {type(e).__name__}: {e}", exc_info=True)
        raise RuntimeError(f"Database connection failed: {e}") from e


def get_initialization_status() -> dict:
    """
    Get the current Supabase client initialization status.

    Returns:
        dict with keys:
            - initialized: bool - Whether client is initialized
            - has_error: bool - Whether initialization failed
            - error_message: str | None - Last error message if any
            - error_type: str | None - Last error type if any
    """
    return {
        "initialized": _supabase_client is not None,
        "has_error": _last_error is not None,
        "error_message": str(_last_error) if _last_error else None,
        "error_type": type(_last_error).__name__ if _last_error else None,
    }


def _close_session(client: Client) -> None:
    if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
        session = client.postgrest.session
        if hasattr(session, "close"):
            session.close()


def cleanup_supabase_client():
    """
    Close the pooled HTTP client and drop the cached Supabase client.

    Called from the application lifespan on shutdown.
    """
    global _supabase_client

    try:
        if _supabase_client is not None:
            _close_session(_supabase_client)
            logger.info("Supabase client cleanup completed")
    except Exception as e:
        logger.warning(f"Error during Supabase client cleanup: {e}")
    finally:
        _supabase_client = None


def reset_supabase_client() -> bool:
    """
    Reset the Supabase client by closing the existing connection and clearing the cache.

    Used after HTTP/2 protocol errors (stale keepalive connections, server-side
    resets). The next get_supabase_client() call builds a fresh connection pool.

    Returns:
        bool: True if reset was performed, False if no client was cached
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is None:
        return False

    try:
        _close_session(_supabase_client)
    except Exception as close_error:
        logger.debug(f"Error closing httpx client during reset: {close_error}")

    _supabase_client = None
    _last_error = None
    _last_error_time = 0
    logger.info("Supabase client reset - next request will create fresh connection")
    return True


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    Args:
        error: The exception to check

    Returns:
        bool: True if this is an HTTP/2 protocol error requiring reset
    """
    error_str = str(error).lower()
    error_type = type(error).__name__

    if "protocolerror" in error_type.lower():
        return True

    http2_error_indicators = [
        "streaminputs.send_headers",
        "streaminputs.recv_data",
        "connectioninputs.recv_data",
        "connectionstate.closed",
        "in state 5",
        "in state connectionstate",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
        "http2 error",
    ]

    for indicator in http2_error_indicators:
        if indicator in error_str:
            return True

    if "invalid input" in error_str and ("state" in error_str or "inputs" in error_str):
        return True

    if "connection closed" in error_str and ("http2" in error_str or "h2" in error_str):
        return True

    return False


def execute_with_retry(operation, max_retries: int = 2, operation_name: str = "database operation"):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: A callable that performs the database operation.
                   It should accept a Supabase client as its first argument.
        max_retries: Maximum number of retry attempts (default: 2)
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Raises:
        Exception: If all retry attempts fail

    Example:
        def read_row(client):
            return client.table("subscriptions").select("*").eq("user_id", user_id).execute()

        result = execute_with_retry(read_row, operation_name="get_latest_subscription")
    """
    last_error = None

    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            last_error = e

            if not is_http2_protocol_error(e):
                raise

            if attempt < max_retries:
                logger.warning(
                    f"HTTP/2 protocol error in {operation_name} (attempt {attempt + 1}/{max_retries + 1}): {e}. "
                    f"Resetting client and retrying..."
                )
                reset_supabase_client()
                time.sleep(0.1)
                continue

            logger.error(
                f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
            )
            raise

    raise last_error if last_error else RuntimeError(f"{operation_name} failed with no error captured")
