"""
Health endpoints for load balancers and uptime checks.
"""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter

from src.config import Config
from src.config.supabase_config import get_initialization_status

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    """
    Simple health check endpoint

    Always returns HTTP 200 while the process serves requests, even if the
    database is unavailable (degraded mode). The body reports database status
    and whether Stripe webhooks can be verified.
    """
    db_status = get_initialization_status()

    response = {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "version": Config.APP_VERSION,
        "webhooks_configured": bool(Config.STRIPE_WEBHOOK_SECRET),
    }

    if db_status["has_error"]:
        response["database"] = "unavailable"
        response["mode"] = "degraded"
        response["database_error"] = db_status["error_type"]
    elif db_status["initialized"]:
        response["database"] = "connected"
    else:
        response["database"] = "not_initialized"

    return response
