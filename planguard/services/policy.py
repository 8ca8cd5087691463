# planguard/services/policy.py
from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional

# ---------- Tiers ----------

class PlanTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    EXTENDED = "extended"
    UNLIMITED = "unlimited"


# Provider / legacy tier names -> canonical tier
_TIER_ALIASES = {
    "ai":        PlanTier.EXTENDED,
    "ai_plan":   PlanTier.EXTENDED,
    "enhanced":  PlanTier.EXTENDED,
    "pro":       PlanTier.UNLIMITED,
    "monthly":   PlanTier.UNLIMITED,
    "pro_monthly": PlanTier.UNLIMITED,
}


def parse_tier(hint) -> Optional[PlanTier]:
    """Map a tier hint (enum, canonical or legacy name) to a PlanTier, or None if unknown."""
    if isinstance(hint, PlanTier):
        return hint
    if not hint:
        return None
    h = str(hint).strip().lower()
    try:
        return PlanTier(h)
    except ValueError:
        return _TIER_ALIASES.get(h)


# ---------- Policy table ----------

@dataclass(frozen=True)
class TierPolicy:
    ai_allowed: bool
    export_allowed: bool
    template_access: str        # 'basic' | 'all'
    ai_limit: Optional[int]     # None = unlimited
    export_limit: Optional[int] # None = unlimited
    term_days: Optional[int]    # None = perpetual (free)
    recurring: bool
    refundable: bool
    support: str


# The only tier -> capability mapping. Everything else asks the evaluator.
TIER_POLICY = {
    PlanTier.FREE: TierPolicy(
        ai_allowed=False, export_allowed=False, template_access="basic",
        ai_limit=0, export_limit=0, term_days=None,
        recurring=False, refundable=False, support="none",
    ),
    PlanTier.BASIC: TierPolicy(
        ai_allowed=False, export_allowed=True, template_access="basic",
        ai_limit=0, export_limit=5, term_days=10,
        recurring=False, refundable=True, support="email",
    ),
    PlanTier.EXTENDED: TierPolicy(
        ai_allowed=True, export_allowed=True, template_access="all",
        ai_limit=30, export_limit=10, term_days=10,
        recurring=False, refundable=True, support="email",
    ),
    PlanTier.UNLIMITED: TierPolicy(
        ai_allowed=True, export_allowed=True, template_access="all",
        ai_limit=None, export_limit=None, term_days=30,
        recurring=True, refundable=False, support="priority",
    ),
}


def policy_for(tier) -> TierPolicy:
    return TIER_POLICY.get(parse_tier(tier) or PlanTier.FREE, TIER_POLICY[PlanTier.FREE])


# ---------- Templates ----------

BASIC_TEMPLATES = frozenset({
    "classic", "minimal", "student", "airy", "focus", "outline", "compact",
})

PREMIUM_TEMPLATES = frozenset({
    "modern", "creative", "technical", "graduate", "internship",
    "executive", "consultant", "innovator", "techlead",
    "bold", "elegant", "metro", "stream",
})

ALL_TEMPLATES = BASIC_TEMPLATES | PREMIUM_TEMPLATES


def _template_id(template_id: str) -> str:
    # registry ids are lower-case ("techLead" in older clients)
    return (template_id or "").strip().lower()


def templates_for(tier) -> frozenset:
    return ALL_TEMPLATES if policy_for(tier).template_access == "all" else BASIC_TEMPLATES


def template_allowed(tier, template_id: str) -> bool:
    return _template_id(template_id) in templates_for(tier)


# ---------- Provider price mapping ----------

# One-time checkout amounts (cents) used when no price id is configured
_AMOUNT_TO_TIER = {
    300: PlanTier.BASIC,
    700: PlanTier.EXTENDED,
    1500: PlanTier.UNLIMITED,
}


def tier_for_price(price_id: str | None, price_map: dict | None) -> Optional[PlanTier]:
    if not price_id or not price_map:
        return None
    return parse_tier(price_map.get(price_id))


def tier_for_amount(amount_cents) -> Optional[PlanTier]:
    try:
        return _AMOUNT_TO_TIER.get(int(amount_cents))
    except (TypeError, ValueError):
        return None


# ---------- Enforcement policy ----------

class EntitlementPolicy:
    """
    Injected at construction of the gate. `enforce=False` short-circuits every
    check to allowed and leaves counters untouched (local dev, demos, e2e tests).
    """
    name = "base"
    enforce = True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} enforce={self.enforce}>"


class ProductionPolicy(EntitlementPolicy):
    name = "production"
    enforce = True


class PermissiveTestPolicy(EntitlementPolicy):
    name = "permissive"
    enforce = False


_POLICIES = {
    "production": ProductionPolicy,
    "permissive": PermissiveTestPolicy,
    "test": PermissiveTestPolicy,
    "disabled": PermissiveTestPolicy,
}


def policy_from_name(name: str | None) -> EntitlementPolicy:
    key = (name or "production").strip().lower()
    if key not in _POLICIES:
        raise ValueError(f"Unknown entitlement policy: {name!r}")
    return _POLICIES[key]()
