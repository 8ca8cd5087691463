# planguard/services/store.py
"""
Plan Record Store.

Durable home of plan records, the billing event audit log and consumption
receipts. Only the usage service and the billing processor write through it.

Two backends share one contract:
- SupabasePlanStore: PostgREST tables (plan_records, billing_events, usage_receipts).
- MemoryPlanStore: in-process, lock-guarded; used in tests and local dev.

Every mutation of a plan record bumps `version`; `compare_and_set` is the
single conditional write the usage counters are built on.
"""
from __future__ import annotations
import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError

from .models import BillingEvent, PlanRecord, changes_to_row, format_ts, parse_ts, utcnow
from ..errors import ConcurrentModificationConflict, StorageUnavailable

logger = logging.getLogger(__name__)

# Billing events in these states are never applied again
FINAL_EVENT_STATUSES = ("processed", "ignored")
# Parked or crashed events may be picked up again
RETRYABLE_EVENT_STATUSES = ("deferred", "failed")

# A `processing` claim older than this belongs to a worker that died mid-event
EVENT_LEASE = timedelta(minutes=5)
# Deferred events that found no plan within this window are dropped as ignored
DEFERRED_TTL = timedelta(days=7)

_UNIQUE_VIOLATION = "23505"


class PlanStore(ABC):

    # ----- plan records -----

    @abstractmethod
    def get(self, record_id: str) -> Optional[PlanRecord]: ...

    @abstractmethod
    def list_records(self, account_id: str) -> List[PlanRecord]:
        """All records of an account, newest first."""

    @abstractmethod
    def find_by_ref(self, *, subscription_ref: str | None = None,
                    order_ref: str | None = None,
                    customer_ref: str | None = None) -> Optional[PlanRecord]: ...

    @abstractmethod
    def activate(self, record: PlanRecord) -> PlanRecord:
        """Deactivate the account's active records, then insert `record`."""

    @abstractmethod
    def compare_and_set(self, record_id: str, expected_version: int,
                        changes: Dict[str, Any]) -> Optional[PlanRecord]:
        """Apply `changes` only if the record is still at `expected_version`. None if it moved."""

    @abstractmethod
    def update(self, record_id: str, changes: Dict[str, Any]) -> Optional[PlanRecord]: ...

    def get_active(self, account_id: str) -> Optional[PlanRecord]:
        active = [r for r in self.list_records(account_id) if r.is_active]
        if len(active) > 1:
            logger.warning(
                "account %s has %d active plan records; using newest %s",
                account_id, len(active), active[0].id,
            )
        return active[0] if active else None

    # ----- billing events -----

    @abstractmethod
    def record_event(self, event: BillingEvent, status: str = "processing", *,
                     now: datetime | None = None, lease: timedelta = EVENT_LEASE) -> bool:
        """
        Claim an event for processing. False if it was already applied.

        A live `processing` claim raises ConcurrentModificationConflict so the
        provider retries later; a claim older than `lease` is taken over.
        """

    @abstractmethod
    def mark_event(self, provider_event_id: str, status: str, detail: str | None = None) -> None: ...

    @abstractmethod
    def get_event(self, provider_event_id: str) -> Optional[Dict[str, Any]]: ...

    @abstractmethod
    def deferred_events(self, *, account_ref: str | None = None,
                        refs: Dict[str, str] | None = None,
                        now: datetime | None = None,
                        max_age: timedelta = DEFERRED_TTL) -> List[BillingEvent]:
        """
        Deferred events matching the account or any of the provider refs, oldest
        first. Those parked longer than `max_age` are marked ignored instead.
        """

    # ----- consumption receipts -----

    @abstractmethod
    def claim_usage_key(self, key: str, account_id: str, kind: str, *,
                        now: datetime | None = None) -> Optional[Dict[str, Any]]:
        """Reserve an idempotency key. None when newly claimed, else the existing receipt."""

    @abstractmethod
    def complete_usage_key(self, key: str, record_id: str, used: int) -> None: ...

    @abstractmethod
    def release_usage_key(self, key: str) -> None: ...


def _claim_expired(row: Dict[str, Any], now: datetime, lease: timedelta) -> bool:
    claimed = parse_ts(row.get("claimed_at"))
    return claimed is None or claimed + lease <= now


def _in_flight(provider_event_id: str) -> ConcurrentModificationConflict:
    return ConcurrentModificationConflict(f"Billing event {provider_event_id} is already being processed")


def _is_stale(row: Dict[str, Any], now: datetime, max_age: timedelta) -> bool:
    created = parse_ts(row.get("created_at"))
    return created is not None and created + max_age <= now


# ---------- in-memory ----------

class MemoryPlanStore(PlanStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._records: Dict[str, PlanRecord] = {}
        self._events: Dict[str, Dict[str, Any]] = {}
        self._receipts: Dict[str, Dict[str, Any]] = {}
        self._seq: Dict[str, int] = {}  # insertion order breaks starts_at ties

    def _order(self, r: PlanRecord):
        return (r.starts_at, self._seq.get(r.id, 0))

    def get(self, record_id):
        with self._lock:
            r = self._records.get(record_id)
            return copy.copy(r) if r else None

    def list_records(self, account_id):
        with self._lock:
            out = [copy.copy(r) for r in self._records.values() if r.account_id == account_id]
            return sorted(out, key=self._order, reverse=True)

    def all_records(self) -> List[PlanRecord]:
        with self._lock:
            return [copy.copy(r) for r in self._records.values()]

    def find_by_ref(self, *, subscription_ref=None, order_ref=None, customer_ref=None):
        with self._lock:
            matches = [
                r for r in self._records.values()
                if (subscription_ref and r.provider_subscription_ref == subscription_ref)
                or (order_ref and r.provider_order_ref == order_ref)
                or (customer_ref and r.provider_customer_ref == customer_ref)
            ]
            if not matches:
                return None
            return copy.copy(max(matches, key=self._order))

    def activate(self, record):
        with self._lock:
            now = utcnow()
            for rid, r in list(self._records.items()):
                if r.account_id == record.account_id and r.is_active:
                    self._records[rid] = r.with_changes({
                        "is_active": False, "status": "superseded",
                        "version": r.version + 1, "updated_at": now,
                    })
            self._records[record.id] = copy.copy(record)
            self._seq[record.id] = len(self._seq) + 1
            return copy.copy(record)

    def compare_and_set(self, record_id, expected_version, changes):
        with self._lock:
            r = self._records.get(record_id)
            if r is None or r.version != expected_version:
                return None
            upd = dict(changes, version=r.version + 1, updated_at=changes.get("updated_at") or utcnow())
            self._records[record_id] = r.with_changes(upd)
            return copy.copy(self._records[record_id])

    def update(self, record_id, changes):
        with self._lock:
            r = self._records.get(record_id)
            if r is None:
                return None
            return self.compare_and_set(record_id, r.version, changes)

    def record_event(self, event, status="processing", *, now=None, lease=EVENT_LEASE):
        now = now or utcnow()
        eid = event.provider_event_id
        with self._lock:
            existing = self._events.get(eid)
            if existing:
                if existing["status"] in FINAL_EVENT_STATUSES:
                    return False
                if existing["status"] == "processing":
                    if not _claim_expired(existing, now, lease):
                        raise _in_flight(eid)
                    logger.warning("taking over stale claim on billing event %s", eid)
            row = event.to_log_row(status)
            row["created_at"] = (existing or {}).get("created_at") or format_ts(now)
            row["claimed_at"] = format_ts(now)
            self._events[eid] = row
            return True

    def mark_event(self, provider_event_id, status, detail=None):
        with self._lock:
            row = self._events.get(provider_event_id)
            if row is not None:
                row["status"] = status
                row["detail"] = detail
                row["processed_at"] = format_ts(utcnow())

    def get_event(self, provider_event_id):
        with self._lock:
            row = self._events.get(provider_event_id)
            return dict(row) if row else None

    def deferred_events(self, *, account_ref=None, refs=None, now=None, max_age=DEFERRED_TTL):
        now = now or utcnow()
        refs = {k: v for k, v in (refs or {}).items() if v}
        rows = []
        with self._lock:
            for row in self._events.values():
                if row["status"] != "deferred" or not (
                    (account_ref and row.get("account_ref") == account_ref)
                    or any(row.get(k) == v for k, v in refs.items())
                ):
                    continue
                if _is_stale(row, now, max_age):
                    logger.info("dropping deferred billing event %s; no plan matched it", row["provider_event_id"])
                    row.update(status="ignored", detail="deferred event expired", processed_at=format_ts(now))
                    continue
                rows.append(dict(row))
        rows.sort(key=lambda row: row.get("created_at") or "")
        return [BillingEvent.from_log_row(row) for row in rows]

    def claim_usage_key(self, key, account_id, kind, *, now=None):
        with self._lock:
            if key in self._receipts:
                return dict(self._receipts[key])
            self._receipts[key] = {"key": key, "account_id": account_id, "kind": kind,
                                   "record_id": None, "used": None, "status": "pending",
                                   "claimed_at": format_ts(now or utcnow())}
            return None

    def complete_usage_key(self, key, record_id, used):
        with self._lock:
            if key in self._receipts:
                self._receipts[key].update(record_id=record_id, used=used, status="done")

    def release_usage_key(self, key):
        with self._lock:
            self._receipts.pop(key, None)


# ---------- Supabase / PostgREST ----------

def _rows(res) -> List[Dict[str, Any]]:
    data = getattr(res, "data", None)
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    return []


class SupabasePlanStore(PlanStore):
    """
    `client` is a service-role supabase client (RLS bypassed). The partial unique
    index on plan_records(account_id) WHERE is_active backs the single-active rule,
    and billing_events.provider_event_id / usage_receipts.key are primary keys.
    """

    def __init__(self, client, *, records_table="plan_records",
                 events_table="billing_events", receipts_table="usage_receipts"):
        self.client = client
        self.records_table = records_table
        self.events_table = events_table
        self.receipts_table = receipts_table

    def _exec(self, query, what: str):
        try:
            return query.execute()
        except APIError as e:
            if getattr(e, "code", None) == _UNIQUE_VIOLATION:
                raise
            logger.exception("supabase %s failed", what)
            raise StorageUnavailable(f"Storage error during {what}") from e
        except httpx.HTTPError as e:
            logger.exception("supabase %s failed (transport)", what)
            raise StorageUnavailable(f"Storage unreachable during {what}") from e

    def _records(self):
        return self.client.table(self.records_table)

    # ----- plan records -----

    def get(self, record_id):
        res = self._exec(self._records().select("*").eq("id", record_id).limit(1), "get")
        rows = _rows(res)
        return PlanRecord.from_row(rows[0]) if rows else None

    def list_records(self, account_id):
        res = self._exec(
            self._records().select("*").eq("account_id", account_id).order("starts_at", desc=True),
            "list_records",
        )
        return [PlanRecord.from_row(r) for r in _rows(res)]

    def find_by_ref(self, *, subscription_ref=None, order_ref=None, customer_ref=None):
        for column, value in (
            ("provider_subscription_ref", subscription_ref),
            ("provider_order_ref", order_ref),
            ("provider_customer_ref", customer_ref),
        ):
            if not value:
                continue
            res = self._exec(
                self._records().select("*").eq(column, value).order("starts_at", desc=True).limit(1),
                "find_by_ref",
            )
            rows = _rows(res)
            if rows:
                return PlanRecord.from_row(rows[0])
        return None

    def _deactivate_account(self, account_id: str) -> None:
        for _ in range(5):
            res = self._exec(
                self._records().select("id,version").eq("account_id", account_id).eq("is_active", True),
                "select_active",
            )
            rows = _rows(res)
            if not rows:
                return
            for row in rows:
                self.compare_and_set(row["id"], int(row.get("version") or 0),
                                     {"is_active": False, "status": "superseded"})
        raise StorageUnavailable(f"Could not deactivate plans for account {account_id}")

    def activate(self, record):
        for attempt in (1, 2):
            self._deactivate_account(record.account_id)
            try:
                res = self._exec(self._records().insert(record.to_row()), "insert_plan")
            except APIError as e:
                # Lost a race with a concurrent activation; the partial index rejected us.
                if attempt == 1:
                    logger.warning("concurrent activation for account %s; retrying", record.account_id)
                    continue
                raise StorageUnavailable("Could not activate plan") from e
            rows = _rows(res)
            return PlanRecord.from_row(rows[0]) if rows else record
        raise StorageUnavailable("Could not activate plan")

    def compare_and_set(self, record_id, expected_version, changes):
        payload = changes_to_row(dict(changes))
        payload["version"] = expected_version + 1
        payload.setdefault("updated_at", format_ts(utcnow()))
        res = self._exec(
            self._records().update(payload).eq("id", record_id).eq("version", expected_version),
            "compare_and_set",
        )
        rows = _rows(res)
        return PlanRecord.from_row(rows[0]) if rows else None

    def update(self, record_id, changes):
        for _ in range(5):
            current = self.get(record_id)
            if current is None:
                return None
            out = self.compare_and_set(record_id, current.version, changes)
            if out is not None:
                return out
        raise StorageUnavailable(f"Plan {record_id} kept changing during update")

    # ----- billing events -----

    def _events(self):
        return self.client.table(self.events_table)

    def get_event(self, provider_event_id):
        res = self._exec(
            self._events().select("*").eq("provider_event_id", provider_event_id).limit(1),
            "get_event",
        )
        rows = _rows(res)
        return rows[0] if rows else None

    def record_event(self, event, status="processing", *, now=None, lease=EVENT_LEASE):
        now = now or utcnow()
        eid = event.provider_event_id
        row = event.to_log_row(status)
        row["created_at"] = row["claimed_at"] = format_ts(now)
        try:
            self._exec(self._events().insert(row), "record_event")
            return True
        except APIError:
            pass  # unique violation: seen before
        existing = self.get_event(eid) or {}
        current = existing.get("status")
        if current == "processing":
            if not _claim_expired(existing, now, lease):
                raise _in_flight(eid)
            logger.warning("taking over stale claim on billing event %s", eid)
        elif current not in RETRYABLE_EVENT_STATUSES:
            return False
        # Reclaim conditional on the status (and claim time) we read, so two
        # redeliveries cannot both win.
        query = (self._events().update({"status": status, "claimed_at": format_ts(now)})
                 .eq("provider_event_id", eid).eq("status", current))
        if current == "processing" and existing.get("claimed_at"):
            query = query.eq("claimed_at", existing["claimed_at"])
        if not _rows(self._exec(query, "reclaim_event")):
            raise _in_flight(eid)
        return True

    def mark_event(self, provider_event_id, status, detail=None):
        self._exec(
            self._events().update({
                "status": status,
                "detail": detail,
                "processed_at": format_ts(utcnow()),
            }).eq("provider_event_id", provider_event_id),
            "mark_event",
        )

    def deferred_events(self, *, account_ref=None, refs=None, now=None, max_age=DEFERRED_TTL):
        now = now or utcnow()
        found: Dict[str, Dict[str, Any]] = {}
        filters = [("account_ref", account_ref)] + list((refs or {}).items())
        for column, value in filters:
            if not value:
                continue
            res = self._exec(
                self._events().select("*").eq("status", "deferred").eq(column, value),
                "deferred_events",
            )
            for row in _rows(res):
                found[row["provider_event_id"]] = row
        live = []
        for eid, row in found.items():
            if _is_stale(row, now, max_age):
                logger.info("dropping deferred billing event %s; no plan matched it", eid)
                self._exec(
                    self._events().update({
                        "status": "ignored",
                        "detail": "deferred event expired",
                        "processed_at": format_ts(now),
                    }).eq("provider_event_id", eid).eq("status", "deferred"),
                    "expire_deferred",
                )
                continue
            live.append(row)
        live.sort(key=lambda row: row.get("created_at") or "")
        return [BillingEvent.from_log_row(row) for row in live]

    # ----- consumption receipts -----

    def _receipts(self):
        return self.client.table(self.receipts_table)

    def claim_usage_key(self, key, account_id, kind, *, now=None):
        try:
            self._exec(
                self._receipts().insert({"key": key, "account_id": account_id, "kind": kind,
                                         "status": "pending",
                                         "claimed_at": format_ts(now or utcnow())}),
                "claim_usage_key",
            )
            return None
        except APIError:
            res = self._exec(self._receipts().select("*").eq("key", key).limit(1), "get_usage_key")
            rows = _rows(res)
            return rows[0] if rows else {"key": key, "status": "pending"}

    def complete_usage_key(self, key, record_id, used):
        self._exec(
            self._receipts().update({"record_id": record_id, "used": used, "status": "done"}).eq("key", key),
            "complete_usage_key",
        )

    def release_usage_key(self, key):
        self._exec(self._receipts().delete().eq("key", key), "release_usage_key")
