# tests/test_usage.py
import threading

import pytest

from planguard.errors import ConcurrentModificationConflict, StorageUnavailable
from planguard.services.models import CounterKind, PlanRecord
from planguard.services.store import MemoryPlanStore
from planguard.services.usage import UsageCounterService


def test_no_plan_is_denied(usage):
    res = usage.try_consume("nobody", "export")
    assert not res.ok
    assert res.error == "no_active_plan"


def test_basic_plan_cannot_use_ai(buy, usage, store):
    buy("basic")
    res = usage.try_consume("acct-1", CounterKind.AI)
    assert not res.ok and res.error == "upgrade_required"
    assert store.get_active("acct-1").ai_calls_used == 0


def test_export_quota_is_enforced(buy, usage, store):
    buy("basic")
    results = [usage.try_consume("acct-1", "export") for _ in range(6)]
    assert [r.ok for r in results] == [True] * 5 + [False]
    assert results[-1].error == "quota_exceeded"
    assert results[-1].to_payload()["limit"] == 5
    assert results[4].remaining == 0
    assert store.get_active("acct-1").exports_used == 5


def test_ai_quota_on_extended(buy, usage):
    buy("extended")
    for _ in range(30):
        assert usage.try_consume("acct-1", "ai").ok
    res = usage.try_consume("acct-1", "ai")
    assert not res.ok and res.error == "quota_exceeded"
    assert (res.used, res.limit) == (30, 30)


def test_unlimited_plan_never_runs_out(buy, usage, store, clock):
    buy("unlimited", period_end=None)
    for _ in range(200):
        assert usage.try_consume("acct-1", "ai").ok
    rec = store.get_active("acct-1")
    assert rec.ai_calls_used == 200 and rec.ai_calls_limit is None


def test_first_export_closes_refund_window(buy, usage, store, clock):
    buy("extended")
    assert store.get_active("acct-1").can_refund
    assert usage.try_consume("acct-1", "ai").ok
    assert store.get_active("acct-1").can_refund

    clock.advance(hours=1)
    first = clock()
    assert usage.try_consume("acct-1", "export").ok
    rec = store.get_active("acct-1")
    assert rec.first_export_at == first and rec.can_refund is False

    clock.advance(hours=1)
    usage.try_consume("acct-1", "export")
    assert store.get_active("acct-1").first_export_at == first


def test_expired_plan_is_denied(buy, usage, clock):
    buy("basic")
    clock.advance(days=10)
    res = usage.try_consume("acct-1", "export")
    assert not res.ok and res.error == "no_active_plan"


def test_idempotency_key_replays_without_incrementing(buy, usage, store):
    buy("basic")
    first = usage.try_consume("acct-1", "export", idempotency_key="req-1")
    again = usage.try_consume("acct-1", "export", idempotency_key="req-1")
    assert first.ok and again.ok and again.replayed
    assert again.used == first.used == 1
    assert store.get_active("acct-1").exports_used == 1

    usage.try_consume("acct-1", "export", idempotency_key="req-2")
    assert store.get_active("acct-1").exports_used == 2


def test_denied_consume_releases_idempotency_key(usage, buy, store):
    assert not usage.try_consume("acct-1", "export", idempotency_key="k").ok
    buy("basic")
    res = usage.try_consume("acct-1", "export", idempotency_key="k")
    assert res.ok and not res.replayed
    assert store.get_active("acct-1").exports_used == 1


class _AlwaysMovedStore(MemoryPlanStore):
    def compare_and_set(self, record_id, expected_version, changes):
        return None


def test_conflict_after_retries(clock):
    store = _AlwaysMovedStore()
    sleeps = []
    usage = UsageCounterService(store, clock=clock, max_retries=3, backoff=0.01, sleep=sleeps.append)
    store.activate(PlanRecord.new("acct-1", "basic", clock()))

    with pytest.raises(ConcurrentModificationConflict):
        usage.try_consume("acct-1", "export")
    assert sleeps == [0.01, 0.02, 0.04]


def test_conflict_releases_idempotency_key(clock):
    store = _AlwaysMovedStore()
    usage = UsageCounterService(store, clock=clock, max_retries=0, sleep=lambda s: None)
    store.activate(PlanRecord.new("acct-1", "basic", clock()))
    with pytest.raises(ConcurrentModificationConflict):
        usage.try_consume("acct-1", "export", idempotency_key="k")
    assert store.claim_usage_key("acct-1:export:k", "acct-1", "export") is None


def test_pending_receipt_of_a_charged_consume_is_reconciled(buy, usage, store, clock, monkeypatch):
    buy("extended")
    real = store.complete_usage_key
    calls = []

    def flaky(*a, **kw):
        calls.append(a)
        if len(calls) == 1:
            raise StorageUnavailable()
        return real(*a, **kw)

    monkeypatch.setattr(store, "complete_usage_key", flaky)
    first = usage.try_consume("acct-1", "ai", idempotency_key="k1")
    assert first.ok and first.used == 1

    # the receipt is still pending; inside the lease it reads as in flight
    with pytest.raises(ConcurrentModificationConflict):
        usage.try_consume("acct-1", "ai", idempotency_key="k1")

    clock.advance(seconds=31)
    again = usage.try_consume("acct-1", "ai", idempotency_key="k1")
    assert again.ok and again.replayed and again.used == 1
    assert store.get_active("acct-1").ai_calls_used == 1
    assert store.claim_usage_key("acct-1:ai:k1", "acct-1", "ai")["status"] == "done"


def test_pending_receipt_without_a_charge_is_retried(buy, usage, store, clock):
    buy("basic")
    # a request that claimed the key and died before touching the counter
    store.claim_usage_key("acct-1:export:k2", "acct-1", "export", now=clock())
    clock.advance(minutes=1)
    res = usage.try_consume("acct-1", "export", idempotency_key="k2")
    assert res.ok and not res.replayed and res.used == 1
    assert store.get_active("acct-1").exports_used == 1


def test_recent_usage_keys_are_bounded(buy, usage, store):
    buy("unlimited")
    for i in range(60):
        usage.try_consume("acct-1", "ai", idempotency_key=f"r{i}")
    keys = store.get_active("acct-1").recent_usage_keys
    assert len(keys) == 50
    assert keys[-1] == {"key": "acct-1:ai:r59", "used": 60}


def test_concurrent_consumers_never_overrun(buy, store, clock):
    buy("basic")
    usage = UsageCounterService(store, clock=clock, max_retries=100, backoff=0, sleep=lambda s: None)
    start = threading.Barrier(20)
    oks = []
    lock = threading.Lock()

    def worker():
        start.wait()
        try:
            res = usage.try_consume("acct-1", "export")
        except ConcurrentModificationConflict:
            return
        with lock:
            oks.append(res.ok)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    granted = sum(oks)
    rec = store.get_active("acct-1")
    assert granted <= 5
    assert rec.exports_used == granted
    assert rec.exports_used <= rec.exports_limit


def test_usage_summary(buy, usage):
    assert usage.usage_summary("acct-1")["tier"] == "free"
    buy("extended")
    usage.try_consume("acct-1", "ai")
    summary = usage.usage_summary("acct-1")
    assert summary["tier"] == "extended"
    assert summary["features"]["ai"] == {"used": 1, "max": 30, "left": 29}
    assert summary["features"]["export"] == {"used": 0, "max": 10, "left": 10}
