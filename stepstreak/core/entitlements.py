"""Subscription tier collaborator: shield bank cap, grant amount, history window."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from stepstreak.core.config import Settings
from stepstreak.core.config import settings as default_settings


@dataclass(frozen=True)
class TierPolicy:
    """Limits that depend on the user's subscription tier."""

    tier: str
    bank_max: int  # cap on recurring tokens held at once
    recurring_amount: int  # tokens granted per period
    reconcile_window_days: int  # trailing days revisited by reconciliation


TIER_POLICIES: dict[str, TierPolicy] = {
    "free": TierPolicy(tier="free", bank_max=2, recurring_amount=2, reconcile_window_days=30),
    "pro": TierPolicy(tier="pro", bank_max=8, recurring_amount=4, reconcile_window_days=365),
}


class Entitlements(ABC):
    """Supplies the current tier policy. Callers re-read it on every use."""

    @abstractmethod
    def current(self) -> TierPolicy:
        """Policy for the tier in effect right now."""


class SettingsEntitlements(Entitlements):
    """Tier taken from configuration at call time."""

    def __init__(self, config: Settings | None = None) -> None:
        self._config = config or default_settings

    def current(self) -> TierPolicy:
        return TIER_POLICIES.get(self._config.subscription_tier, TIER_POLICIES["free"])


class StaticEntitlements(Entitlements):
    """Mutable tier holder, set by the purchase-flow collaborator."""

    def __init__(self, tier: str = "free") -> None:
        self.tier = tier

    def current(self) -> TierPolicy:
        if self.tier not in TIER_POLICIES:
            msg = f"Unknown tier: {self.tier}"
            raise ValueError(msg)
        return TIER_POLICIES[self.tier]
