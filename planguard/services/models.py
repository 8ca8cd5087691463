# planguard/services/models.py
from __future__ import annotations
import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .policy import PlanTier, parse_tier, policy_for
from ..errors import InvalidEventType, UnparsableEvent


class CounterKind(str, Enum):
    AI = "ai"
    EXPORT = "export"


class EventType(str, Enum):
    ORDER_PAID = "order_paid"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    ORDER_REFUNDED = "order_refunded"


class AccountState(str, Enum):
    NO_PLAN = "no_plan"
    ACTIVE_PAID = "active_paid"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# ---------- timestamp helpers ----------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value) -> Optional[datetime]:
    """Accept datetime, ISO-8601 (with 'Z') or epoch seconds; always returns aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_ts(dt: Optional[datetime]) -> Optional[str]:
    return dt.astimezone(timezone.utc).isoformat() if dt else None


# ---------- PlanRecord ----------

_TS_FIELDS = ("starts_at", "expires_at", "first_export_at", "updated_at")


@dataclass
class PlanRecord:
    account_id: str
    plan_tier: PlanTier
    starts_at: datetime
    expires_at: Optional[datetime]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    status: str = "active"   # active | superseded | cancelled | expired | refunded
    ai_calls_used: int = 0
    ai_calls_limit: Optional[int] = None
    exports_used: int = 0
    exports_limit: Optional[int] = None
    can_refund: bool = False
    first_export_at: Optional[datetime] = None
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    provider_order_ref: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    version: int = 0
    updated_at: Optional[datetime] = None
    # {key, used} of the latest idempotent consumes, written with the counter itself
    recent_usage_keys: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def new(
        cls,
        account_id: str,
        tier,
        now: datetime,
        *,
        period_end: Optional[datetime] = None,
        customer_ref: str | None = None,
        subscription_ref: str | None = None,
        order_ref: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
    ) -> "PlanRecord":
        """
        Build a fresh active record from the tier policy.
        One-time tiers get a fixed term from `now`; recurring tiers take the
        provider's period end when known.
        """
        tier = parse_tier(tier) or PlanTier.FREE
        pol = policy_for(tier)
        if pol.term_days is None:
            expires_at = None
        elif pol.recurring and period_end and period_end > now:
            expires_at = period_end
        else:
            expires_at = now + timedelta(days=pol.term_days)
        return cls(
            account_id=account_id,
            plan_tier=tier,
            starts_at=now,
            expires_at=expires_at,
            is_active=tier is not PlanTier.FREE,
            status="active",
            ai_calls_limit=pol.ai_limit,
            exports_limit=pol.export_limit,
            can_refund=pol.refundable,
            provider_customer_ref=customer_ref,
            provider_subscription_ref=subscription_ref,
            provider_order_ref=order_ref,
            amount=amount,
            currency=currency,
            updated_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        """Active for use: flagged active, paid tier, and inside its window."""
        if self.plan_tier is PlanTier.FREE or not self.is_active:
            return False
        return self.expires_at is not None and now < self.expires_at

    def used(self, kind: CounterKind) -> int:
        return self.ai_calls_used if kind is CounterKind.AI else self.exports_used

    def limit(self, kind: CounterKind) -> Optional[int]:
        return self.ai_calls_limit if kind is CounterKind.AI else self.exports_limit

    def with_changes(self, changes: Dict[str, Any]) -> "PlanRecord":
        return replace(self, **changes)

    # ----- storage rows -----

    def to_row(self) -> Dict[str, Any]:
        row = {}
        for f in fields(self):
            val = getattr(self, f.name)
            if f.name in _TS_FIELDS:
                val = format_ts(val)
            elif f.name == "plan_tier":
                val = val.value
            row[f.name] = val
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PlanRecord":
        known = {f.name for f in fields(cls)}
        data = {k: v for k, v in (row or {}).items() if k in known}
        for k in _TS_FIELDS:
            if k in data:
                data[k] = parse_ts(data[k])
        data["plan_tier"] = parse_tier(data.get("plan_tier")) or PlanTier.FREE
        data["is_active"] = bool(data.get("is_active"))
        data["can_refund"] = bool(data.get("can_refund"))
        data["ai_calls_used"] = int(data.get("ai_calls_used") or 0)
        data["exports_used"] = int(data.get("exports_used") or 0)
        data["version"] = int(data.get("version") or 0)
        data["recent_usage_keys"] = list(data.get("recent_usage_keys") or [])
        return cls(**data)


def changes_to_row(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize a partial update the same way to_row() does."""
    out = {}
    for k, v in changes.items():
        if k in _TS_FIELDS:
            v = format_ts(v)
        elif isinstance(v, Enum):
            v = v.value
        out[k] = v
    return out


# ---------- BillingEvent ----------

@dataclass
class BillingEvent:
    event_type: EventType
    provider_event_id: str
    account_ref: Optional[str] = None
    tier_hint: Optional[str] = None
    period_end: Optional[datetime] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    provider: str = "generic"
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    order_ref: Optional[str] = None
    status_hint: Optional[str] = None   # provider status, e.g. 'canceled' on an update
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def tier(self) -> Optional[PlanTier]:
        return parse_tier(self.tier_hint)

    @classmethod
    def from_envelope(cls, env: Dict[str, Any]) -> "BillingEvent":
        """Parse the normalized envelope {eventType, providerEventId, accountRef, tierHint, periodEnd?, ...}."""
        if not isinstance(env, dict):
            raise UnparsableEvent("Envelope must be an object")
        etype = (env.get("eventType") or "").strip()
        eid = (env.get("providerEventId") or "").strip()
        if not etype or not eid:
            raise UnparsableEvent("eventType and providerEventId are required")
        try:
            event_type = EventType(_camel_to_snake(etype))
        except ValueError:
            raise InvalidEventType(f"Unmapped event type: {etype}", event_type=etype)
        try:
            period_end = parse_ts(env.get("periodEnd"))
        except (TypeError, ValueError):
            raise UnparsableEvent("periodEnd is not a timestamp")
        amount = env.get("amount")
        return cls(
            event_type=event_type,
            provider_event_id=eid,
            account_ref=env.get("accountRef"),
            tier_hint=env.get("tierHint"),
            period_end=period_end,
            amount=int(amount) if amount is not None else None,
            currency=env.get("currency"),
            provider=env.get("provider") or "generic",
            customer_ref=env.get("customerRef"),
            subscription_ref=env.get("subscriptionRef"),
            order_ref=env.get("orderRef"),
            status_hint=env.get("status"),
            raw=env,
        )

    def to_log_row(self, status: str) -> Dict[str, Any]:
        return {
            "provider_event_id": self.provider_event_id,
            "provider": self.provider,
            "event_type": self.event_type.value,
            "account_ref": self.account_ref,
            "customer_ref": self.customer_ref,
            "subscription_ref": self.subscription_ref,
            "order_ref": self.order_ref,
            "tier_hint": self.tier_hint,
            "period_end": format_ts(self.period_end),
            "amount": self.amount,
            "currency": self.currency,
            "status_hint": self.status_hint,
            "status": status,
        }

    @classmethod
    def from_log_row(cls, row: Dict[str, Any]) -> "BillingEvent":
        return cls(
            event_type=EventType(row["event_type"]),
            provider_event_id=row["provider_event_id"],
            account_ref=row.get("account_ref"),
            tier_hint=row.get("tier_hint"),
            period_end=parse_ts(row.get("period_end")),
            amount=row.get("amount"),
            currency=row.get("currency"),
            provider=row.get("provider") or "generic",
            customer_ref=row.get("customer_ref"),
            subscription_ref=row.get("subscription_ref"),
            order_ref=row.get("order_ref"),
            status_hint=row.get("status_hint"),
        )


def _camel_to_snake(s: str) -> str:
    if "_" in s or s.islower():
        return s.lower()
    out = []
    for i, ch in enumerate(s):
        if ch.isupper() and i:
            out.append("_")
        out.append(ch.lower())
    return "".join(out)


# ---------- state machine view ----------

def account_state(records: Iterable[PlanRecord], now: datetime) -> AccountState:
    """Derive the per-account billing state from its records (newest first wins)."""
    recs = sorted(records, key=lambda r: r.starts_at, reverse=True)
    for r in recs:
        if r.is_live(now):
            return AccountState.ACTIVE_PAID
    if not recs:
        return AccountState.NO_PLAN
    latest = recs[0]
    if latest.status == "refunded":
        return AccountState.REFUNDED
    if latest.status == "cancelled":
        return AccountState.CANCELLED
    if latest.status in ("expired", "active", "superseded"):
        return AccountState.EXPIRED
    return AccountState.NO_PLAN
