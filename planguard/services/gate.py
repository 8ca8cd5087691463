# planguard/services/gate.py
"""
Capability Gate: the single yes/no surface feature code talks to.

Every call takes the account id explicitly and re-reads the plan record;
nothing about a plan is cached between calls.
"""
from __future__ import annotations
import logging
from datetime import datetime
from enum import Enum
from typing import Callable

from .evaluator import UNLIMITED, Capabilities, evaluate
from .models import CounterKind, account_state, format_ts, utcnow
from .policy import EntitlementPolicy, ProductionPolicy, PlanTier, policy_for, templates_for
from .refunds import refund_eligible
from .store import PlanStore
from .usage import UsageCounterService, UsageResult
from ..errors import StorageUnavailable

logger = logging.getLogger(__name__)


class Action(str, Enum):
    USE_AI = "ai"
    EXPORT = "export"

    @property
    def kind(self) -> CounterKind:
        return CounterKind(self.value)


def _action(value) -> Action:
    if isinstance(value, Action):
        return value
    if isinstance(value, CounterKind):
        return Action(value.value)
    return Action(str(value).lower())


class CapabilityGate:
    def __init__(self, store: PlanStore, usage: UsageCounterService,
                 policy: EntitlementPolicy | None = None,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.usage = usage
        self.policy = policy or ProductionPolicy()
        self.clock = clock

    @property
    def enforcing(self) -> bool:
        return self.policy.enforce

    def capabilities(self, account_id: str, now: datetime | None = None) -> Capabilities:
        now = now or self.clock()
        if not self.enforcing:
            return Capabilities(
                tier=PlanTier.UNLIMITED,
                can_use_ai=True,
                can_export=True,
                remaining_ai=UNLIMITED,
                remaining_exports=UNLIMITED,
            )
        return evaluate(self.store.get_active(account_id), now)

    def can_do(self, account_id: str, action) -> bool:
        action = _action(action)
        if not self.enforcing:
            return True
        try:
            return self.capabilities(account_id).allows(action.kind)
        except StorageUnavailable:
            logger.exception("capability check failed for %s/%s; denying", account_id, action.value)
            return False

    def can_access_template(self, account_id: str, template_id: str) -> bool:
        if not self.enforcing:
            return True
        try:
            return self.capabilities(account_id).can_access_template(template_id)
        except StorageUnavailable:
            logger.exception("template check failed for %s/%s; denying", account_id, template_id)
            return False

    def consume(self, account_id: str, action, idempotency_key: str | None = None) -> UsageResult:
        action = _action(action)
        if not self.enforcing:
            logger.info("permissive policy: %s for %s not counted", action.value, account_id)
            return UsageResult(ok=True, kind=action.kind, bypass=self.policy.name)
        return self.usage.try_consume(account_id, action.kind, idempotency_key=idempotency_key)

    def plan_snapshot(self, account_id: str, now: datetime | None = None) -> dict:
        """Plan summary for the client: tier, state, expiry, quotas and refund eligibility."""
        now = now or self.clock()
        records = self.store.list_records(account_id)
        active = next((r for r in records if r.is_active), None)
        caps = self.capabilities(account_id, now)
        live = active is not None and active.is_live(now)

        quotas = {}
        for kind in CounterKind:
            quotas[kind.value] = {
                "used": active.used(kind) if live else 0,
                "limit": active.limit(kind) if live else 0,
                "remaining": None if caps.remaining(kind) is UNLIMITED else caps.remaining(kind),
            }
        tier = caps.tier if self.enforcing else (active.plan_tier if live else PlanTier.FREE)
        pol = policy_for(tier)
        return {
            "tier": tier.value,
            "state": account_state(records, now).value,
            "isActive": live,
            "startsAt": format_ts(active.starts_at) if live else None,
            "expiresAt": format_ts(active.expires_at) if live else None,
            "quotas": quotas,
            "canRefund": refund_eligible(active, now),
            "firstExportAt": format_ts(active.first_export_at) if live else None,
            "templates": sorted(templates_for(tier)),
            "support": pol.support,
            "enforced": self.enforcing,
            "capabilities": caps.to_dict(),
        }
