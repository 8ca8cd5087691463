# planguard/services/billing.py
"""
Billing event processor.

Consumes normalized provider events and moves an account between
NoPlan / ActivePaid(tier) / Expired / Cancelled / Refunded.

Delivery is at-least-once and unordered:
- each provider_event_id is claimed in the audit log before any write, so a
  redelivery is a no-op;
- every write is "set field to X", never "add N", so a replay after a crash
  lands in the same state;
- an event that names a subscription/order we have not seen yet is parked as
  `deferred` and replayed right after the matching activation; an event
  without provider refs goes to the account's newest record or is ignored;
- a `processing` claim is a lease, so an event whose worker died (or whose
  failure could not be recorded) is taken over by a later redelivery.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from .models import AccountState, BillingEvent, EventType, PlanRecord, account_state, utcnow
from .policy import PlanTier, policy_for
from .refunds import merge_can_refund
from .store import DEFERRED_TTL, EVENT_LEASE, PlanStore
from ..errors import InvalidEventType, StorageUnavailable, UnparsableEvent

logger = logging.getLogger(__name__)

_CANCELLED_STATUSES = {"canceled", "cancelled", "unpaid", "incomplete_expired"}
_EXPIRED_STATUSES = {"expired"}


class Outcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    DEFERRED = "deferred"


_LOG_STATUS = {
    Outcome.APPLIED: "processed",
    Outcome.IGNORED: "ignored",
    Outcome.DEFERRED: "deferred",
}


@dataclass
class ProcessResult:
    outcome: Outcome
    event_id: str
    record_id: Optional[str] = None
    detail: Optional[str] = None
    activated: bool = False

    def to_dict(self) -> dict:
        return {"outcome": self.outcome.value, "eventId": self.event_id,
                "recordId": self.record_id, "detail": self.detail}


class BillingEventProcessor:
    def __init__(self, store: PlanStore, *, clock: Callable[[], datetime] = utcnow,
                 event_lease: timedelta = EVENT_LEASE, deferred_ttl: timedelta = DEFERRED_TTL):
        self.store = store
        self.clock = clock
        self.event_lease = event_lease
        self.deferred_ttl = deferred_ttl
        self._handlers: Dict[EventType, Callable] = {
            EventType.ORDER_PAID: self._order_paid,
            EventType.SUBSCRIPTION_CREATED: self._subscription_created,
            EventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            EventType.SUBSCRIPTION_CANCELLED: self._subscription_ended,
            EventType.SUBSCRIPTION_EXPIRED: self._subscription_ended,
            EventType.ORDER_REFUNDED: self._order_refunded,
        }

    # ---------- entry points ----------

    def process_envelope(self, envelope: dict, now: datetime | None = None) -> ProcessResult:
        """Parse a normalized envelope and process it. Unknown or malformed events are acknowledged and ignored."""
        try:
            event = BillingEvent.from_envelope(envelope)
        except (InvalidEventType, UnparsableEvent) as e:
            eid = (envelope or {}).get("providerEventId") if isinstance(envelope, dict) else None
            logger.info("ignoring billing envelope %s: %s", eid, e.message)
            return ProcessResult(Outcome.IGNORED, eid or "", detail=e.code)
        return self.process(event, now)

    def process(self, event: BillingEvent, now: datetime | None = None) -> ProcessResult:
        now = now or self.clock()
        eid = event.provider_event_id

        if not self.store.record_event(event, now=now, lease=self.event_lease):
            logger.info("billing event %s (%s) already handled; skipping", eid, event.event_type.value)
            return ProcessResult(Outcome.DUPLICATE, eid)

        handler = self._handlers.get(event.event_type)
        try:
            if handler is None:
                result = ProcessResult(Outcome.IGNORED, eid, detail="unhandled event type")
            else:
                result = handler(event, now)
        except Exception as e:
            logger.exception("billing event %s (%s) failed", eid, event.event_type.value)
            try:
                self.store.mark_event(eid, "failed", detail=str(e)[:500])
            except StorageUnavailable:
                logger.warning("could not mark billing event %s failed; its claim lapses after %s",
                               eid, self.event_lease)
            raise

        self.store.mark_event(eid, _LOG_STATUS[result.outcome], detail=result.detail)
        logger.info(
            "billing event %s type=%s provider=%s outcome=%s record=%s %s",
            eid, event.event_type.value, event.provider, result.outcome.value,
            result.record_id, result.detail or "",
        )

        if result.activated:
            self._replay_deferred(result.record_id, now)
        return result

    def state(self, account_id: str, now: datetime | None = None) -> AccountState:
        return account_state(self.store.list_records(account_id), now or self.clock())

    # ---------- matching ----------

    def _match(self, event: BillingEvent) -> Optional[PlanRecord]:
        if event.subscription_ref:
            rec = self.store.find_by_ref(subscription_ref=event.subscription_ref)
            if rec:
                return rec
        if event.order_ref:
            rec = self.store.find_by_ref(order_ref=event.order_ref)
            if rec:
                return rec
        if event.subscription_ref or event.order_ref:
            # names a provider object we have not seen yet
            return None
        # No refs: the account's newest record, active or closed
        account_id = self._account_for(event)
        if account_id:
            records = self.store.list_records(account_id)
            return records[0] if records else None
        return None

    def _unmatched(self, event: BillingEvent) -> ProcessResult:
        if event.subscription_ref or event.order_ref:
            return self._deferred(event)
        # ref-less events are never parked
        logger.info("billing event %s (%s) matches no plan; ignoring",
                    event.provider_event_id, event.event_type.value)
        return ProcessResult(Outcome.IGNORED, event.provider_event_id, detail="no plan")

    def _account_for(self, event: BillingEvent) -> Optional[str]:
        if event.account_ref:
            return event.account_ref
        if event.customer_ref:
            rec = self.store.find_by_ref(customer_ref=event.customer_ref)
            if rec:
                return rec.account_id
        return None

    def _deferred(self, event: BillingEvent) -> ProcessResult:
        logger.warning(
            "billing event %s (%s) arrived before its plan (sub=%s order=%s); deferring",
            event.provider_event_id, event.event_type.value, event.subscription_ref, event.order_ref,
        )
        return ProcessResult(Outcome.DEFERRED, event.provider_event_id, detail="no matching plan yet")

    # ---------- transitions ----------

    def _activate(self, event: BillingEvent, now: datetime, tier: PlanTier) -> ProcessResult:
        eid = event.provider_event_id
        account_id = self._account_for(event)

        existing = self.store.find_by_ref(order_ref=event.order_ref) if event.order_ref else None
        if existing is None and event.subscription_ref:
            existing = self.store.find_by_ref(subscription_ref=event.subscription_ref)
        if existing is not None:
            if account_id and existing.account_id != account_id:
                logger.error("billing event %s names account %s but plan %s belongs to %s",
                             eid, account_id, existing.id, existing.account_id)
                return ProcessResult(Outcome.IGNORED, eid, record_id=existing.id, detail="account mismatch")
            # the other half of a checkout (order + subscription) already activated it
            return self._merge_into(existing, event, now)

        if not account_id:
            if event.subscription_ref or event.order_ref:
                return self._deferred(event)
            logger.error("billing event %s has no resolvable account (customer=%s)", eid, event.customer_ref)
            return ProcessResult(Outcome.IGNORED, eid, detail="no account")

        record = PlanRecord.new(
            account_id, tier, now,
            period_end=event.period_end,
            customer_ref=event.customer_ref,
            subscription_ref=event.subscription_ref,
            order_ref=event.order_ref,
            amount=event.amount,
            currency=event.currency,
        )
        saved = self.store.activate(record)
        logger.info("activated %s plan %s for account %s until %s",
                    tier.value, saved.id, account_id, saved.expires_at)
        return ProcessResult(Outcome.APPLIED, eid, record_id=saved.id, activated=True)

    def _merge_into(self, record: PlanRecord, event: BillingEvent, now: datetime) -> ProcessResult:
        eid = event.provider_event_id
        if not record.is_active:
            return ProcessResult(Outcome.IGNORED, eid, record_id=record.id,
                                 detail=f"plan is {record.status}")
        changes = {}
        for attr, column in (("subscription_ref", "provider_subscription_ref"),
                             ("order_ref", "provider_order_ref"),
                             ("customer_ref", "provider_customer_ref")):
            value = getattr(event, attr)
            if value and not getattr(record, column):
                changes[column] = value
        if changes:
            record = self.store.update(record.id, changes) or record
        renewed = self._renew(record, event, now)
        if changes:
            # newly known refs may unblock parked events
            return ProcessResult(Outcome.APPLIED, eid, record_id=record.id,
                                 detail="linked provider refs", activated=True)
        return renewed

    def _order_paid(self, event: BillingEvent, now: datetime) -> ProcessResult:
        tier = event.tier
        if tier is None or tier is PlanTier.FREE:
            logger.warning("paid order %s with unknown tier hint %r", event.provider_event_id, event.tier_hint)
            return ProcessResult(Outcome.IGNORED, event.provider_event_id, detail="unknown tier")
        return self._activate(event, now, tier)

    def _subscription_created(self, event: BillingEvent, now: datetime) -> ProcessResult:
        tier = event.tier or PlanTier.UNLIMITED
        if not policy_for(tier).recurring:
            logger.warning("subscription %s created for one-time tier %s; using unlimited",
                           event.subscription_ref, tier.value)
            tier = PlanTier.UNLIMITED
        return self._activate(event, now, tier)

    def _renew(self, record: PlanRecord, event: BillingEvent, now: datetime) -> ProcessResult:
        eid = event.provider_event_id
        if not policy_for(record.plan_tier).recurring:
            return ProcessResult(Outcome.IGNORED, eid, record_id=record.id, detail="fixed-term plan")
        end = event.period_end
        if end is None:
            return ProcessResult(Outcome.IGNORED, eid, record_id=record.id, detail="no period end")
        if record.expires_at is not None and end <= record.expires_at:
            return ProcessResult(Outcome.IGNORED, eid, record_id=record.id, detail="stale period")
        self.store.update(record.id, {"expires_at": end, "updated_at": now})
        logger.info("renewed plan %s until %s", record.id, end)
        return ProcessResult(Outcome.APPLIED, eid, record_id=record.id)

    def _subscription_updated(self, event: BillingEvent, now: datetime) -> ProcessResult:
        status = (event.status_hint or "").lower()
        if status in _CANCELLED_STATUSES or status in _EXPIRED_STATUSES:
            return self._subscription_ended(event, now)

        record = self._match(event)
        if record is None:
            return self._unmatched(event)
        if not record.is_active:
            # Only a new paid order reactivates a closed plan
            return ProcessResult(Outcome.IGNORED, event.provider_event_id, record_id=record.id,
                                 detail=f"plan is {record.status}")
        return self._renew(record, event, now)

    def _subscription_ended(self, event: BillingEvent, now: datetime) -> ProcessResult:
        eid = event.provider_event_id
        expired = (event.event_type is EventType.SUBSCRIPTION_EXPIRED
                   or (event.status_hint or "").lower() in _EXPIRED_STATUSES)
        new_status = "expired" if expired else "cancelled"

        record = self._match(event)
        if record is None:
            return self._unmatched(event)
        if not record.is_active:
            return ProcessResult(Outcome.IGNORED, eid, record_id=record.id,
                                 detail=f"plan already {record.status}")
        self.store.update(record.id, {"is_active": False, "status": new_status, "updated_at": now})
        logger.info("plan %s %s", record.id, new_status)
        return ProcessResult(Outcome.APPLIED, eid, record_id=record.id)

    def _order_refunded(self, event: BillingEvent, now: datetime) -> ProcessResult:
        eid = event.provider_event_id
        record = self._match(event)
        if record is None:
            return self._unmatched(event)
        if record.status == "refunded":
            return ProcessResult(Outcome.IGNORED, eid, record_id=record.id, detail="already refunded")
        if not record.can_refund or record.first_export_at is not None:
            logger.warning("refund issued for plan %s which was not refund-eligible", record.id)
        self.store.update(record.id, {
            "is_active": False,
            "can_refund": merge_can_refund(record.can_refund, False),
            "status": "refunded",
            "updated_at": now,
        })
        logger.info("plan %s refunded", record.id)
        return ProcessResult(Outcome.APPLIED, eid, record_id=record.id)

    # ---------- out-of-order replay ----------

    def _replay_deferred(self, record_id: Optional[str], now: datetime) -> None:
        record = self.store.get(record_id) if record_id else None
        if record is None:
            return
        pending = self.store.deferred_events(
            account_ref=record.account_id,
            refs={
                "subscription_ref": record.provider_subscription_ref,
                "order_ref": record.provider_order_ref,
            },
            now=now,
            max_age=self.deferred_ttl,
        )
        for event in pending:
            logger.info("replaying deferred billing event %s (%s)",
                        event.provider_event_id, event.event_type.value)
            self.process(event, now)
