"""
Security helpers for handling user-controlled values.
"""

import logging
from urllib.parse import quote, urlparse

logger = logging.getLogger(__name__)


def sanitize_for_logging(value: str) -> str:
    """Sanitize user-controlled strings for safe logging.

    Prevents log injection attacks by removing newlines and other control characters
    that could be used to forge log entries.

    Args:
        value: String value to sanitize (can be None)

    Returns:
        Sanitized string with newlines replaced by spaces
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return value.replace("\n", " ").replace("\r", " ").replace("\x00", "")


def is_safe_relative_path(path: str | None) -> bool:
    """Return True if `path` is a same-origin relative path (no scheme, no host).

    Used before building login redirects so a crafted `next` value cannot send
    the user to another site.
    """
    if not path or not path.startswith("/") or path.startswith("//"):
        return False
    parsed = urlparse(path)
    return not parsed.scheme and not parsed.netloc


def build_login_redirect(return_path: str) -> str:
    """Login URL that sends the user back to `return_path` afterwards."""
    if not is_safe_relative_path(return_path):
        logger.warning(f"Refusing unsafe login return path: {sanitize_for_logging(return_path)}")
        return_path = "/"
    return f"/login?next={quote(return_path, safe='')}"
