# planguard/services/usage.py
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from .evaluator import quota_violations
from .models import CounterKind, PlanRecord, parse_ts, utcnow
from .policy import policy_for
from .refunds import first_export_changes
from .store import PlanStore
from ..errors import (
    CapabilityDenied, ConcurrentModificationConflict, NoActivePlan, QuotaExceeded, StorageUnavailable,
)

logger = logging.getLogger(__name__)

_COUNTER_FIELD = {
    CounterKind.AI: "ai_calls_used",
    CounterKind.EXPORT: "exports_used",
}

# A pending receipt older than this belongs to a request that died
RECEIPT_LEASE = timedelta(seconds=30)
# Idempotency keys remembered per plan record
RECENT_USAGE_KEYS = 50


@dataclass
class UsageResult:
    ok: bool
    kind: CounterKind
    used: Optional[int] = None
    limit: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None
    replayed: bool = False
    bypass: Optional[str] = None
    record_id: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None or self.used is None:
            return None
        return max(self.limit - self.used, 0)

    def to_payload(self) -> dict:
        if not self.ok:
            return {
                "error": self.error,
                "feature": self.kind.value,
                "used": self.used,
                "limit": self.limit,
                "message": self.message,
            }
        out = {"feature": self.kind.value, "used": self.used, "limit": self.limit,
               "remaining": self.remaining}
        if self.replayed:
            out["replayed"] = True
        if self.bypass:
            out["bypass"] = self.bypass
        return out

    @classmethod
    def denied(cls, exc_type, kind: CounterKind, used=None, limit=None) -> "UsageResult":
        return cls(ok=False, kind=kind, used=used, limit=limit,
                   error=exc_type.code, message=exc_type().message)


class UsageCounterService:
    """
    Atomic quota consumption. Every increment is a version-conditioned write;
    a lost race re-reads the record and re-checks the limit, so two requests
    can never both take the last unit.

    Idempotent consumes also append their key to the record in that same
    write. A receipt left pending by a request that died is reconciled
    against those keys once `receipt_lease` has passed.
    """

    def __init__(self, store: PlanStore, *, clock: Callable[[], datetime] = utcnow,
                 max_retries: int = 3, backoff: float = 0.05, sleep=time.sleep,
                 receipt_lease: timedelta = RECEIPT_LEASE):
        self.store = store
        self.clock = clock
        self.max_retries = max_retries
        self.backoff = backoff
        self.receipt_lease = receipt_lease
        self._sleep = sleep

    def try_consume(self, account_id: str, kind, now: datetime | None = None,
                    idempotency_key: str | None = None) -> UsageResult:
        kind = CounterKind(kind)
        now = now or self.clock()

        key = None
        if idempotency_key:
            key = f"{account_id}:{kind.value}:{idempotency_key}"
            replay = self._claim(key, account_id, kind, now)
            if replay is not None:
                return replay

        try:
            result = self._consume(account_id, kind, now, key)
        except Exception:
            if key:
                self.store.release_usage_key(key)
            raise

        if key:
            if result.ok:
                try:
                    self.store.complete_usage_key(key, result.record_id, result.used)
                except StorageUnavailable:
                    # the unit is charged; the pending receipt is reconciled on retry
                    logger.warning("receipt %s left pending after consume on plan %s", key, result.record_id)
            else:
                self.store.release_usage_key(key)
        return result

    def _claim(self, key: str, account_id: str, kind: CounterKind, now: datetime) -> Optional[UsageResult]:
        """None once this call owns `key`; otherwise the result to replay."""
        for _ in range(2):
            prior = self.store.claim_usage_key(key, account_id, kind.value, now=now)
            if prior is None:
                return None
            if prior.get("status") == "done":
                logger.info("replayed consume %s for %s", kind.value, account_id)
                return UsageResult(ok=True, kind=kind, used=prior.get("used"),
                                   limit=self._limit_of(prior.get("record_id"), kind),
                                   replayed=True, record_id=prior.get("record_id"))

            claimed = parse_ts(prior.get("claimed_at"))
            if claimed is not None and now < claimed + self.receipt_lease:
                # same key still in flight on another request
                raise ConcurrentModificationConflict("A request with this idempotency key is in progress")

            charged = self._find_charge(account_id, key)
            if charged is not None:
                record, used = charged
                logger.warning("receipt %s was charged on plan %s; completing it", key, record.id)
                self.store.complete_usage_key(key, record.id, used)
                return UsageResult(ok=True, kind=kind, used=used, limit=record.limit(kind),
                                   replayed=True, record_id=record.id)
            logger.warning("receipt %s expired without a charge; retrying it", key)
            self.store.release_usage_key(key)
        raise ConcurrentModificationConflict("A request with this idempotency key is in progress")

    def _find_charge(self, account_id: str, key: str):
        for record in self.store.list_records(account_id):
            for entry in record.recent_usage_keys:
                if entry.get("key") == key:
                    return record, entry.get("used")
        return None

    def _limit_of(self, record_id, kind):
        rec = self.store.get(record_id) if record_id else None
        return rec.limit(kind) if rec else None

    def _consume(self, account_id: str, kind: CounterKind, now: datetime,
                 key: str | None = None) -> UsageResult:
        for attempt in range(self.max_retries + 1):
            record = self.store.get_active(account_id)
            if record is None or not record.is_live(now):
                return UsageResult.denied(NoActivePlan, kind)

            pol = policy_for(record.plan_tier)
            if not (pol.ai_allowed if kind is CounterKind.AI else pol.export_allowed):
                return UsageResult.denied(CapabilityDenied, kind, used=record.used(kind), limit=record.limit(kind))

            used, limit = record.used(kind), record.limit(kind)
            if limit is not None and used >= limit:
                logger.info("quota exceeded: account=%s kind=%s used=%s limit=%s",
                            account_id, kind.value, used, limit)
                return UsageResult.denied(QuotaExceeded, kind, used=used, limit=limit)

            changes = {_COUNTER_FIELD[kind]: used + 1, "updated_at": now}
            if kind is CounterKind.EXPORT:
                changes.update(first_export_changes(record, now))
            if key:
                changes["recent_usage_keys"] = (
                    list(record.recent_usage_keys) + [{"key": key, "used": used + 1}]
                )[-RECENT_USAGE_KEYS:]

            updated = self.store.compare_and_set(record.id, record.version, changes)
            if updated is not None:
                quota_violations(updated)
                if "first_export_at" in changes:
                    logger.info("first export on plan %s; refund window closed", updated.id)
                return UsageResult(ok=True, kind=kind, used=updated.used(kind),
                                   limit=updated.limit(kind), record_id=updated.id)

            logger.debug("consume CAS lost on plan %s (attempt %d)", record.id, attempt + 1)
            if attempt < self.max_retries:
                self._sleep(self.backoff * (2 ** attempt))

        logger.warning("consume gave up after %d attempts: account=%s kind=%s",
                       self.max_retries + 1, account_id, kind.value)
        raise ConcurrentModificationConflict()

    def usage_summary(self, account_id: str, now: datetime | None = None) -> dict:
        now = now or self.clock()
        record: Optional[PlanRecord] = self.store.get_active(account_id)
        live = record is not None and record.is_live(now)
        data = {"tier": record.plan_tier.value if live else "free", "features": {}}
        for kind in CounterKind:
            if not live:
                data["features"][kind.value] = {"used": 0, "max": 0, "left": 0}
                continue
            used, limit = record.used(kind), record.limit(kind)
            data["features"][kind.value] = {
                "used": used,
                "max": limit,
                "left": None if limit is None else max(limit - used, 0),
            }
        return data
