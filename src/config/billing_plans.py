"""
Billing Plans Configuration
The fixed price allow-list accepted by checkout, with per-plan trial rules.
"""

from dataclasses import dataclass

from src.config.config import Config

PLAN_LABEL_NONE = "None"
PLAN_LABEL_PAID = "Paid"  # Subscribed on a price that is no longer in the catalog


@dataclass(frozen=True)
class PricePlan:
    price_id: str
    label: str
    trial_period_days: int | None = None


class PriceCatalog:
    """Read-only lookup over the allowed subscription prices."""

    def __init__(self, plans: list[PricePlan]):
        self._plans = {plan.price_id: plan for plan in plans if plan.price_id}

    def is_allowed(self, price_id: str | None) -> bool:
        return bool(price_id) and price_id in self._plans

    def get(self, price_id: str | None) -> PricePlan | None:
        if not price_id:
            return None
        return self._plans.get(price_id)

    def plan_label(self, price_id: str | None) -> str:
        if not price_id:
            return PLAN_LABEL_NONE
        plan = self._plans.get(price_id)
        return plan.label if plan else PLAN_LABEL_PAID

    def price_ids(self) -> list[str]:
        return list(self._plans)


def build_price_catalog() -> PriceCatalog:
    return PriceCatalog(
        [
            PricePlan(
                price_id=Config.STRIPE_PRICE_MONTHLY,
                label="Monthly",
                trial_period_days=Config.STRIPE_TRIAL_DAYS or None,
            ),
            PricePlan(price_id=Config.STRIPE_PRICE_YEARLY, label="Yearly"),
        ]
    )
