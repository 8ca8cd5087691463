# planguard/services/evaluator.py
"""
Entitlement evaluation: plan record + wall-clock time -> capability set.

Pure and side-effect free. Missing, expired or deactivated plans all collapse
to the free capability set (fail closed). Nothing here is cached; callers
evaluate on every check because time moves independently of writes.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Union

from .models import CounterKind, PlanRecord
from .policy import PlanTier, TIER_POLICY, template_allowed

logger = logging.getLogger(__name__)


class _Unlimited:
    """Sentinel for an uncapped quota. Serializes to None."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNLIMITED"

    def __bool__(self) -> bool:
        return True


UNLIMITED = _Unlimited()

Remaining = Union[int, _Unlimited]


@dataclass(frozen=True)
class Capabilities:
    tier: PlanTier
    can_use_ai: bool
    can_export: bool
    remaining_ai: Remaining
    remaining_exports: Remaining
    expires_at: Optional[datetime] = None
    can_refund: bool = False

    def can_access_template(self, template_id: str) -> bool:
        return template_allowed(self.tier, template_id)

    def allows(self, kind: CounterKind) -> bool:
        return self.can_use_ai if kind is CounterKind.AI else self.can_export

    def remaining(self, kind: CounterKind) -> Remaining:
        return self.remaining_ai if kind is CounterKind.AI else self.remaining_exports

    def to_dict(self) -> Dict:
        def _num(v):
            return None if v is UNLIMITED else v
        return {
            "tier": self.tier.value,
            "canUseAI": self.can_use_ai,
            "canExport": self.can_export,
            "remainingAI": _num(self.remaining_ai),
            "remainingExports": _num(self.remaining_exports),
            "unlimitedAI": self.remaining_ai is UNLIMITED,
            "unlimitedExports": self.remaining_exports is UNLIMITED,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
            "canRefund": self.can_refund,
        }


FREE_CAPABILITIES = Capabilities(
    tier=PlanTier.FREE,
    can_use_ai=False,
    can_export=False,
    remaining_ai=0,
    remaining_exports=0,
)


def _remaining(used: int, limit: Optional[int]) -> Remaining:
    if limit is None:
        return UNLIMITED
    return max(limit - (used or 0), 0)


def evaluate(record: Optional[PlanRecord], now: datetime) -> Capabilities:
    if record is None or not record.is_live(now):
        return FREE_CAPABILITIES

    policy = TIER_POLICY.get(record.plan_tier)
    if policy is None:
        return FREE_CAPABILITIES

    remaining_ai = _remaining(record.ai_calls_used, record.ai_calls_limit) if policy.ai_allowed else 0
    remaining_exports = (
        _remaining(record.exports_used, record.exports_limit) if policy.export_allowed else 0
    )

    return Capabilities(
        tier=record.plan_tier,
        # exhausted quota downgrades silently
        can_use_ai=policy.ai_allowed and bool(remaining_ai),
        can_export=policy.export_allowed and bool(remaining_exports),
        remaining_ai=remaining_ai,
        remaining_exports=remaining_exports,
        expires_at=record.expires_at,
        can_refund=record.can_refund and record.first_export_at is None and policy.refundable,
    )


def quota_violations(record: Optional[PlanRecord]) -> Dict[str, Dict[str, int]]:
    """Counters that exceed their non-null limit. Empty dict when the record is consistent."""
    out = {}
    if record is None:
        return out
    for kind in CounterKind:
        used, limit = record.used(kind), record.limit(kind)
        if limit is not None and used > limit:
            out[kind.value] = {"used": used, "limit": limit}
    if out:
        logger.warning("quota invariant violated on plan %s: %s", record.id, out)
    return out
