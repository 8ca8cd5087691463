# tests/test_gate.py
import pytest

from planguard.errors import StorageUnavailable
from planguard.services.gate import Action, CapabilityGate
from planguard.services.policy import PermissiveTestPolicy


def test_can_do_follows_plan(gate, buy):
    assert not gate.can_do("acct-1", Action.EXPORT)
    buy("basic")
    assert gate.can_do("acct-1", Action.EXPORT)
    assert not gate.can_do("acct-1", "ai")


def test_consume_goes_through_usage_counters(gate, buy, store):
    buy("extended")
    res = gate.consume("acct-1", Action.USE_AI)
    assert res.ok and res.used == 1
    assert store.get_active("acct-1").ai_calls_used == 1


def test_can_do_fails_closed_when_storage_is_down(gate, buy, store, monkeypatch):
    buy("unlimited")

    def down(account_id):
        raise StorageUnavailable()

    monkeypatch.setattr(store, "get_active", down)
    assert gate.can_do("acct-1", Action.USE_AI) is False
    assert gate.can_access_template("acct-1", "executive") is False
    with pytest.raises(StorageUnavailable):
        gate.consume("acct-1", Action.USE_AI)


def test_permissive_policy_bypasses_counters(store, usage, clock):
    gate = CapabilityGate(store, usage, PermissiveTestPolicy(), clock)
    assert gate.can_do("nobody", Action.USE_AI)
    assert gate.can_access_template("nobody", "executive")
    res = gate.consume("nobody", Action.EXPORT)
    assert res.ok and res.bypass == "permissive"
    assert store.all_records() == []


def test_plan_snapshot_tracks_refund_window(gate, buy, clock):
    buy("basic")
    snap = gate.plan_snapshot("acct-1")
    assert snap["canRefund"] is True and snap["firstExportAt"] is None
    assert snap["quotas"]["export"] == {"used": 0, "limit": 5, "remaining": 5}

    gate.consume("acct-1", Action.EXPORT)
    snap = gate.plan_snapshot("acct-1")
    assert snap["canRefund"] is False
    assert snap["firstExportAt"] == clock().isoformat()


def test_plan_snapshot_unlimited(gate, buy):
    buy("unlimited")
    snap = gate.plan_snapshot("acct-1")
    assert snap["tier"] == "unlimited"
    assert snap["quotas"]["ai"]["limit"] is None
    assert snap["quotas"]["ai"]["remaining"] is None
    assert snap["support"] == "priority"
    assert snap["canRefund"] is False


def test_plan_snapshot_after_expiry(gate, buy, clock):
    buy("basic")
    clock.advance(days=30)
    snap = gate.plan_snapshot("acct-1")
    assert snap["tier"] == "free"
    assert snap["state"] == "expired"
    assert snap["isActive"] is False
