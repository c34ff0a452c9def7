import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from src.config import Config
from src.config.logging_config import configure_logging
from src.utils.exceptions import BillingError

configure_logging()
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
if Config.SENTRY_ENABLED and Config.SENTRY_DSN:
    import sentry_sdk

    def sentry_traces_sampler(sampling_context):
        """
        Sampling strategy:
        - Errors: always (parent_sampled)
        - Development: 100%
        - Health endpoint: 0%
        - Webhooks: 100% (low volume, high value)
        - Everything else: SENTRY_TRACES_SAMPLE_RATE
        """
        if sampling_context.get("parent_sampled") is not None:
            return 1.0

        if Config.SENTRY_ENVIRONMENT == "development":
            return 1.0

        endpoint = ""
        if "asgi_scope" in sampling_context:
            endpoint = sampling_context["asgi_scope"].get("path", "")

        if endpoint == "/health":
            return 0.0
        if endpoint == "/billing/webhook":
            return 1.0

        return Config.SENTRY_TRACES_SAMPLE_RATE

    sentry_sdk.init(
        dsn=Config.SENTRY_DSN,
        send_default_pii=False,
        environment=Config.SENTRY_ENVIRONMENT,
        release=Config.SENTRY_RELEASE,
        traces_sampler=sentry_traces_sampler,
    )
    logger.info(
        f"Sentry initialized (environment: {Config.SENTRY_ENVIRONMENT}, release: {Config.SENTRY_RELEASE})"
    )
else:
    logger.info("Sentry disabled (SENTRY_ENABLED=false or SENTRY_DSN not set)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown events
    """
    is_valid, missing_vars = Config.validate_critical_env_vars()
    if not is_valid:
        # Start anyway so /health can report the problem; billing routes will fail
        logger.error(f"Missing required environment variables: {missing_vars}")
    else:
        logger.info("All critical environment variables validated")

    yield

    from src.config.supabase_config import cleanup_supabase_client

    cleanup_supabase_client()
    logger.info("Shutdown complete")


def _error_body(detail) -> dict:
    if isinstance(detail, str):
        return {"error": detail}
    return {"error": "Request failed", "detail": detail}


def create_app() -> FastAPI:
    app = FastAPI(
        title="CRM Billing Sync API",
        description="Stripe subscription checkout, webhooks and access state for the CRM",
        version=Config.APP_VERSION,
        lifespan=lifespan,
    )

    if Config.IS_PRODUCTION:
        allowed_origins = [Config.APP_URL]
    else:
        allowed_origins = list(
            dict.fromkeys([Config.APP_URL, "http://localhost:3000", "http://127.0.0.1:3000"])
        )

    # The webhook is called server-to-server by Stripe and needs no CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "sentry-trace", "baggage"],
    )
    logger.info(f"CORS allowed origins: {allowed_origins}")

    from src.routes.billing import router as billing_router
    from src.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(billing_router)

    # ==================== Exception Handlers ====================

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Malformed bodies are client errors (400), not 422."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {location} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(BillingError)
    async def billing_exception_handler(request: Request, exc: BillingError):
        logger.error(f"Billing error on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return app


# Export a default app instance for environments that import `app`
app = create_app()

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting CRM Billing Sync API server...")
    uvicorn.run("src.main:app", host="0.0.0.0", port=8000, reload=Config.IS_DEVELOPMENT)
