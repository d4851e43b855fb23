# src/billing/plans.py
import json
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from billing.exceptions import ConflictFailure

logger = logging.getLogger(__name__)

PLAN_TYPES = ("basic", "premium", "elite")

# membership tier -> User.access_level
ACCESS_LEVELS: Mapping[str, int] = MappingProxyType({"basic": 1, "premium": 2, "elite": 3})


def access_level_for(plan_type: Optional[str]) -> int:
    return ACCESS_LEVELS.get(plan_type, 0)


@dataclass(frozen=True)
class Plan:
    """Local metadata for one provider price."""
    price_id: str
    name: str
    plan_type: str

    def __post_init__(self):
        if self.plan_type not in PLAN_TYPES:
            raise ValueError(f"Unknown plan type {self.plan_type!r}")


class PlanCatalog:
    """Immutable mapping from provider price ids to plans.

    Built once at startup and handed to the subscription flow and the webhook
    reconciler, so both resolve price ids against the same table.
    """

    def __init__(self, plans: Iterable[Plan]):
        self._plans = MappingProxyType({plan.price_id: plan for plan in plans if plan.price_id})

    @classmethod
    def from_settings(cls, settings) -> "PlanCatalog":
        return cls([
            Plan(settings.STRIPE_PRICE_BASIC_MONTHLY, "Basic Monthly", "basic"),
            Plan(settings.STRIPE_PRICE_PREMIUM_MONTHLY, "Premium Monthly", "premium"),
            Plan(settings.STRIPE_PRICE_PREMIUM_ANNUAL, "Premium Annual", "premium"),
            Plan(settings.STRIPE_PRICE_ELITE_MONTHLY, "Elite Monthly", "elite"),
        ])

    def __contains__(self, price_id) -> bool:
        return price_id in self._plans

    def __len__(self) -> int:
        return len(self._plans)

    def get(self, price_id: Optional[str]) -> Optional[Plan]:
        if not price_id:
            return None
        return self._plans.get(price_id)

    def require(self, price_id: str) -> Plan:
        plan = self.get(price_id)
        if plan is None:
            raise ConflictFailure(f"Invalid price ID: {price_id}")
        return plan

    def list_plans(self, prices: List[dict]) -> List[Dict]:
        """Describe the active provider prices that have a local plan."""
        plans = []
        for price in prices:
            plan = self.get(price.get("id"))
            if plan is None:
                continue
            product = price.get("product") or {}
            if isinstance(product, str):
                product = {"id": product}
            recurring = price.get("recurring") or {}
            plans.append({
                "id": price["id"],
                "product_id": product.get("id"),
                "name": plan.name or product.get("name"),
                "description": product.get("description"),
                "type": plan.plan_type,
                "amount": price.get("unit_amount"),
                "currency": price.get("currency"),
                "interval": recurring.get("interval"),
                "interval_count": recurring.get("interval_count"),
                "features": _parse_features(product.get("metadata") or {}),
            })
        return plans


def _parse_features(metadata: dict) -> List[str]:
    raw = metadata.get("features")
    if not raw:
        return []
    try:
        features = json.loads(raw)
    except ValueError:
        logger.warning(f"Ignoring malformed product features metadata: {raw!r}")
        return []
    return features if isinstance(features, list) else []
