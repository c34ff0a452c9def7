from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubscriptionStatus(str, Enum):
    NONE = "none"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


# past_due keeps access while the provider retries collection
ACCESS_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE}
)

# Provider statuses with no slot of their own
_PROVIDER_STATUS_ALIASES = {
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.UNPAID,
}


def normalize_status(value) -> SubscriptionStatus:
    """Map any provider or stored status string onto the local enumeration."""
    if isinstance(value, SubscriptionStatus):
        return value
    if not value:
        return SubscriptionStatus.NONE
    raw = str(value).strip().lower()
    if raw in _PROVIDER_STATUS_ALIASES:
        return _PROVIDER_STATUS_ALIASES[raw]
    try:
        return SubscriptionStatus(raw)
    except ValueError:
        return SubscriptionStatus.INCOMPLETE


def has_access(status) -> bool:
    return normalize_status(status) in ACCESS_STATUSES


class SubscriptionRecord(BaseModel):
    """One row of the subscriptions table. Access is derived, never stored."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    price_id: str | None = None
    current_period_end: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("user_id", mode="before")
    @classmethod
    def coerce_user_id(cls, v):
        return str(v) if v is not None else v

    @field_validator("status", mode="before")
    @classmethod
    def coerce_status(cls, v):
        return normalize_status(v)

    @property
    def access(self) -> bool:
        return self.status in ACCESS_STATUSES


# ==================== Requests ====================


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(..., alias="priceId", min_length=1)


class SyncRequest(BaseModel):
    session_id: str = Field(..., min_length=1)


# ==================== Responses ====================


class CheckoutResponse(BaseModel):
    url: str
    kind: str = "checkout"  # "checkout" or "portal" when already subscribed


class SyncResponse(BaseModel):
    ok: bool = True
    status: SubscriptionStatus


class PortalResponse(BaseModel):
    url: str


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False


class SubscriptionStateResponse(BaseModel):
    status: SubscriptionStatus
    access: bool
    plan: str
    price_id: str | None = None
    current_period_end: str | None = None
    has_billing_customer: bool = False
