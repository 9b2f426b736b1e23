"""Plan & Add-on Catalog - Single source of truth for plan and add-on definitions.

This is the AUTHORITATIVE source for:
- Plan names and prices (upgrade/downgrade classification is price based)
- Feature flags and usage limits per plan
- Add-on prices and plan availability
- Stripe price ID mappings (read from environment)

Plan Structure:
- FREE:   €0.00/mo
- PRO:    €9.99/mo
- STUDIO: €29.99/mo

Add-ons:
- decoratives:    €0.99/mo (FREE, PRO)
- promotedBeat:   €2.99/mo (PRO, STUDIO)
- extraDashboard: €1.49/mo (FREE, PRO)
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any, FrozenSet
import os
import logging

logger = logging.getLogger(__name__)


# ============================================================================
# PLAN ENUM - Canonical Plan Codes
# ============================================================================
class PlanCode(str, Enum):
    """Canonical plan codes."""
    FREE = "FREE"
    PRO = "PRO"
    STUDIO = "STUDIO"


FREE_PLAN = PlanCode.FREE.value


@dataclass(frozen=True)
class PlanDefinition:
    name: str
    display_name: str
    description: str
    price: float
    stripe_price_id: Optional[str]
    features: Dict[str, bool] = field(default_factory=dict)
    # None means unlimited
    usage_limits: Dict[str, Optional[int]] = field(default_factory=dict)
    currency: str = "EUR"
    unit: str = "user/month"


@dataclass(frozen=True)
class AddOnDefinition:
    name: str
    display_name: str
    description: str
    price: float
    stripe_price_id: Optional[str]
    available_for: FrozenSet[str]
    features: Dict[str, bool] = field(default_factory=dict)
    usage_limit_extensions: Dict[str, int] = field(default_factory=dict)
    currency: str = "EUR"
    unit: str = "user/month"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "description": self.description,
            "price": self.price,
            "currency": self.currency,
            "unit": self.unit,
            "availableFor": sorted(self.available_for),
            "features": dict(self.features),
            "usageLimitsExtensions": dict(self.usage_limit_extensions),
        }


@dataclass(frozen=True)
class PlanComparison:
    is_upgrade: bool
    is_downgrade: bool
    is_same_plan: bool
    price_diff: float
    current_price: float
    new_price: float


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
def _env_price(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


def default_plan_definitions() -> List[PlanDefinition]:
    return [
        PlanDefinition(
            name=PlanCode.FREE.value,
            display_name="Free",
            description="Free plan",
            price=0.0,
            stripe_price_id=_env_price("STRIPE_PRICE_FREE"),
            features={
                "advancedProfile": True,
                "banner": False,
                "certificates": True,
                "decoratives": False,
                "beats": True,
                "downloads": False,
                "cover": False,
                "promotedBeat": False,
                "publicPlaylists": True,
                "playlists": True,
                "collaborators": True,
                "privatePlaylists": False,
                "dashboards": True,
            },
            usage_limits={
                "maxCertificates": 5,
                "maxBeats": 3,
                "maxBeatSize": 10,
                "maxStorage": 30,
                "maxPlaylists": 1,
                "maxCollaborators": 3,
                "maxBeatsPerPlaylist": 3,
                "maxDashboards": 3,
            },
        ),
        PlanDefinition(
            name=PlanCode.PRO.value,
            display_name="Pro",
            description="Pro plan",
            price=9.99,
            stripe_price_id=_env_price("STRIPE_PRICE_PRO"),
            features={
                "advancedProfile": True,
                "banner": True,
                "certificates": True,
                "decoratives": False,
                "beats": True,
                "downloads": False,
                "cover": True,
                "promotedBeat": False,
                "publicPlaylists": True,
                "playlists": True,
                "collaborators": True,
                "privatePlaylists": False,
                "dashboards": True,
            },
            usage_limits={
                "maxCertificates": 10,
                "maxBeats": 30,
                "maxBeatSize": 25,
                "maxStorage": 750,
                "maxPlaylists": 10,
                "maxCollaborators": 10,
                "maxBeatsPerPlaylist": 30,
                "maxDashboards": 30,
            },
        ),
        PlanDefinition(
            name=PlanCode.STUDIO.value,
            display_name="Studio",
            description="Most advanced plan",
            price=29.99,
            stripe_price_id=_env_price("STRIPE_PRICE_STUDIO"),
            features={
                "advancedProfile": True,
                "banner": True,
                "certificates": True,
                "decoratives": True,
                "beats": True,
                "downloads": True,
                "cover": True,
                "promotedBeat": False,
                "publicPlaylists": True,
                "playlists": True,
                "collaborators": True,
                "privatePlaylists": True,
                "dashboards": True,
            },
            usage_limits={
                "maxCertificates": None,
                "maxBeats": None,
                "maxBeatSize": 50,
                "maxStorage": 1000,
                "maxPlaylists": None,
                "maxCollaborators": 30,
                "maxBeatsPerPlaylist": 250,
                "maxDashboards": None,
            },
        ),
    ]


def default_addon_definitions() -> List[AddOnDefinition]:
    return [
        AddOnDefinition(
            name="decoratives",
            display_name="Decoratives",
            description="Exclusive decoratives for your profile picture",
            price=0.99,
            stripe_price_id=_env_price("STRIPE_PRICE_ADDON_DECORATIVES"),
            available_for=frozenset({PlanCode.FREE.value, PlanCode.PRO.value}),
            features={"decoratives": True},
        ),
        AddOnDefinition(
            name="promotedBeat",
            display_name="Promoted Beat",
            description="Promote your beats for more visibility",
            price=2.99,
            stripe_price_id=_env_price("STRIPE_PRICE_ADDON_PROMOTED_BEAT"),
            available_for=frozenset({PlanCode.PRO.value, PlanCode.STUDIO.value}),
            features={"promotedBeat": True},
        ),
        AddOnDefinition(
            name="extraDashboard",
            display_name="Extra Dashboard",
            description="Adds one extra dashboard to your account",
            price=1.49,
            stripe_price_id=_env_price("STRIPE_PRICE_ADDON_EXTRA_DASHBOARD"),
            available_for=frozenset({PlanCode.FREE.value, PlanCode.PRO.value}),
            usage_limit_extensions={"maxDashboards": 1},
        ),
    ]


# ============================================================================
# CATALOG SERVICE
# ============================================================================
class PlanCatalog:
    """Lookup service over plan and add-on definitions."""

    def __init__(
        self,
        plans: Optional[List[PlanDefinition]] = None,
        addons: Optional[List[AddOnDefinition]] = None,
        free_plan: str = FREE_PLAN,
    ):
        plans = plans if plans is not None else default_plan_definitions()
        addons = addons if addons is not None else default_addon_definitions()
        self._plans: Dict[str, PlanDefinition] = {p.name: p for p in plans}
        self._addons: Dict[str, AddOnDefinition] = {a.name: a for a in addons}
        if free_plan not in self._plans:
            raise ValueError(f"Free plan {free_plan} is not defined in the catalog")
        self._free_plan = free_plan

    # ---------------------------------------------------------------- plans
    @property
    def free_plan(self) -> str:
        return self._free_plan

    def plan_names(self) -> List[str]:
        return list(self._plans)

    def is_valid_plan(self, plan_name: Optional[str]) -> bool:
        return plan_name in self._plans

    def get_plan(self, plan_name: str) -> Optional[PlanDefinition]:
        return self._plans.get(plan_name)

    def get_plan_price(self, plan_name: str) -> float:
        plan = self._plans.get(plan_name)
        return plan.price if plan else 0.0

    def compare_plans(self, current_plan: str, new_plan: str) -> PlanComparison:
        current_price = self.get_plan_price(current_plan)
        new_price = self.get_plan_price(new_plan)
        diff = round(new_price - current_price, 2)
        return PlanComparison(
            is_upgrade=new_price > current_price,
            is_downgrade=new_price < current_price,
            is_same_plan=current_plan == new_plan,
            price_diff=diff,
            current_price=current_price,
            new_price=new_price,
        )

    def plan_requires_payment(self, plan_name: str) -> bool:
        return self.get_plan_price(plan_name) > 0

    def price_ref_for_plan(self, plan_name: str) -> Optional[str]:
        plan = self._plans.get(plan_name)
        return plan.stripe_price_id if plan else None

    def plan_name_for_price(self, price_ref: Optional[str]) -> Optional[str]:
        """Reverse lookup used by webhooks: price id -> plan name."""
        if not price_ref:
            return None
        for plan in self._plans.values():
            if plan.stripe_price_id == price_ref:
                return plan.name
        return None

    def plan_price_refs(self) -> set:
        return {p.stripe_price_id for p in self._plans.values() if p.stripe_price_id}

    # --------------------------------------------------------------- add-ons
    def addon_names(self) -> List[str]:
        return list(self._addons)

    def is_valid_addon(self, addon_name: Optional[str]) -> bool:
        return addon_name in self._addons

    def get_addon(self, addon_name: str) -> Optional[AddOnDefinition]:
        return self._addons.get(addon_name)

    def is_addon_available_for_plan(self, addon_name: str, plan_name: str) -> bool:
        addon = self._addons.get(addon_name)
        if not addon:
            return False
        return plan_name in addon.available_for

    def addons_for_plan(self, plan_name: str) -> List[AddOnDefinition]:
        return [a for a in self._addons.values() if plan_name in a.available_for]

    def addon_price_ref(self, addon_name: str) -> Optional[str]:
        addon = self._addons.get(addon_name)
        return addon.stripe_price_id if addon else None

    def addon_name_for_price(self, price_ref: Optional[str]) -> Optional[str]:
        if not price_ref:
            return None
        for addon in self._addons.values():
            if addon.stripe_price_id == price_ref:
                return addon.name
        return None

    def log_price_configuration(self) -> None:
        """Log which price IDs are configured (never secrets)."""
        for plan in self._plans.values():
            logger.info("Stripe price ID plan=%s price_id=%s", plan.name, plan.stripe_price_id or "(missing)")
        for addon in self._addons.values():
            logger.info("Stripe price ID addon=%s price_id=%s", addon.name, addon.stripe_price_id or "(missing)")


# Singleton instance
plan_catalog = PlanCatalog()
