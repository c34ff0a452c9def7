import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_float_env(name: str, default: float) -> float:
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _resolve_app_url() -> str:
    """Application base URL used to build checkout and portal redirect targets."""
    explicit = _get_env_var("APP_URL") or _get_env_var("NEXT_PUBLIC_APP_URL")
    if explicit:
        return explicit.rstrip("/")

    vercel_host = _get_env_var("VERCEL_URL")
    if vercel_host:
        return f"https://{vercel_host}".rstrip("/")

    return "http://localhost:3000"


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    APP_VERSION = _get_env_var("APP_VERSION", "1.0.0")
    APP_URL = _resolve_app_url()

    # Supabase Configuration (service-role key: writes bypass RLS)
    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_KEY = os.environ.get("SUPABASE_KEY") or os.environ.get("SUPABASE_SERVICE_ROLE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_API_VERSION = _get_env_var("STRIPE_API_VERSION", "2024-06-20")

    # Price allow-list
    STRIPE_PRICE_MONTHLY = _get_env_var("STRIPE_PRICE_MONTHLY", "price_1SuOMyA0KYJ0htSxcZPG0Vkg")
    STRIPE_PRICE_YEARLY = _get_env_var("STRIPE_PRICE_YEARLY", "price_1SuOMyA0KYJ0htSxF9os18YO")
    STRIPE_TRIAL_DAYS = int(_get_env_var("STRIPE_TRIAL_DAYS", "7"))

    # Post-checkout sync poller
    BILLING_SYNC_POLL_INTERVAL = _get_float_env("BILLING_SYNC_POLL_INTERVAL", 0.9)
    BILLING_SYNC_TIMEOUT = _get_float_env("BILLING_SYNC_TIMEOUT", 30.0)

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_env_var("SENTRY_ENABLED", "false").lower() in {"1", "true", "yes"}
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_RELEASE = _get_env_var("SENTRY_RELEASE", APP_VERSION)
    SENTRY_TRACES_SAMPLE_RATE = _get_float_env("SENTRY_TRACES_SAMPLE_RATE", 0.1)

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        # Skip validation in Vercel environment to prevent startup failures
        if os.environ.get("VERCEL"):
            return True

        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")
        if not cls.STRIPE_SECRET_KEY:
            missing_vars.append("STRIPE_SECRET_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=your_stripe_secret_key\n"
                "STRIPE_WEBHOOK_SECRET=your_stripe_webhook_secret (required for /billing/webhook)\n"
                "APP_URL=your_app_base_url (optional)"
            )

        return True

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Validate that all critical environment variables are set.

        Returns:
            tuple: (is_valid, missing_vars)
                - is_valid: bool indicating if all critical vars are present
                - missing_vars: list of missing variable names
        """
        # Skip validation in Vercel environment to prevent startup failures
        if os.environ.get("VERCEL"):
            return True, []

        critical_vars = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
        }

        missing = [name for name, value in critical_vars.items() if not value]
        is_valid = len(missing) == 0

        return is_valid, missing
