# tests/test_routes.py
import json
from types import SimpleNamespace

import pytest
from flask import g, jsonify

from planguard.errors import StorageUnavailable
from planguard.extensions import User
from planguard.security.entitlements import require_capability
from planguard.services.gate import Action
from planguard.services.providers import normalize_stripe
from planguard.services.store import MemoryPlanStore
from test_providers import (
    PADDLE_PUBLIC_KEY, lemon_payload, lemon_signature, paddle_fields, stripe_event, stripe_signature,
)


def _post_stripe(client, event):
    payload = json.dumps(event)
    return client.post("/webhooks/stripe", data=payload, content_type="application/json",
                       headers={"Stripe-Signature": stripe_signature(payload)})


def _post_lemon(client, payload):
    body = json.dumps(payload).encode()
    return client.post("/webhooks/lemonsqueezy", data=body, content_type="application/json",
                       headers={"X-Signature": lemon_signature(body)})


# ---------- webhooks ----------

def test_stripe_checkout_activates_plan(client, store):
    r = _post_stripe(client, stripe_event("checkout.session.completed", {
        "id": "cs_1", "mode": "payment", "payment_status": "paid", "amount_total": 300,
        "payment_intent": "pi_1", "client_reference_id": "acct-1",
        "metadata": {"price_id": "price_extended"},
    }))
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "applied"
    assert store.get_active("acct-1").plan_tier.value == "extended"


def test_stripe_redelivery_is_acknowledged(client, store):
    ev = stripe_event("checkout.session.completed", {
        "id": "cs_1", "mode": "payment", "payment_status": "paid", "amount_total": 300,
        "client_reference_id": "acct-1",
    })
    assert _post_stripe(client, ev).get_json()["outcome"] == "applied"
    r = _post_stripe(client, ev)
    assert r.status_code == 200 and r.get_json()["outcome"] == "duplicate"
    assert len(store.list_records("acct-1")) == 1


def test_stripe_bad_signature_is_rejected(client, store):
    payload = json.dumps(stripe_event("charge.refunded", {"id": "ch_1"}))
    r = client.post("/webhooks/stripe", data=payload, headers={"Stripe-Signature": "t=1,v1=00"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "bad_signature"


def test_stripe_unknown_event_is_acknowledged(client, store):
    r = _post_stripe(client, stripe_event("payout.paid", {"id": "po_1"}))
    assert r.status_code == 200
    assert r.get_json()["outcome"] == "ignored"
    assert store.all_records() == []


def test_storage_outage_is_not_acknowledged(client, store, monkeypatch):
    def down(*a, **kw):
        raise StorageUnavailable()

    monkeypatch.setattr(store, "record_event", down)
    r = _post_stripe(client, stripe_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1"}))
    assert r.status_code == 503
    assert r.get_json()["error"] == "storage_unavailable"


def test_lemon_order_then_refund(client, store):
    r = _post_lemon(client, lemon_payload("order_created", {
        "status": "paid", "total": 700, "first_order_item": {"product_id": 1002},
        "created_at": "2025-03-01T12:00:00Z",
    }, obj_id=55))
    assert r.status_code == 200 and r.get_json()["outcome"] == "applied"
    assert store.get_active("acct-1").plan_tier.value == "extended"

    r = _post_lemon(client, lemon_payload("order_refunded", {
        "refunded_amount": 700, "updated_at": "2025-03-02T12:00:00Z",
    }, obj_id=55))
    assert r.get_json()["outcome"] == "applied"
    assert store.get_active("acct-1") is None


def test_lemon_bad_signature(client):
    body = json.dumps(lemon_payload("order_created", {"status": "paid"})).encode()
    r = client.post("/webhooks/lemonsqueezy", data=body, headers={"X-Signature": "0" * 64})
    assert r.status_code == 400


def test_event_in_flight_is_retried_not_acknowledged(client, store, clock):
    ev = stripe_event("charge.refunded", {"id": "ch_1", "payment_intent": "pi_1", "refunded": True})
    # another worker holds a live claim on this event
    store.record_event(normalize_stripe(ev), now=clock())
    r = _post_stripe(client, ev)
    assert r.status_code == 503
    assert r.get_json()["error"] == "conflict"


@pytest.fixture
def paddle_app(app):
    app.config["PADDLE_PUBLIC_KEY"] = PADDLE_PUBLIC_KEY
    return app


def test_paddle_payment_then_refund(paddle_app, store):
    with paddle_app.test_client() as c:
        r = c.post("/webhooks/paddle", data=paddle_fields(
            "payment_succeeded", alert_id="p1", order_id="ord_1", product_id="2002", sale_gross="7.00"))
        assert r.status_code == 200 and r.get_json()["outcome"] == "applied"
        assert store.get_active("acct-1").plan_tier.value == "extended"

        r = c.post("/webhooks/paddle", data=paddle_fields(
            "payment_refunded", alert_id="p2", order_id="ord_1", refund_type="full"))
        assert r.get_json()["outcome"] == "applied"
    assert store.get_active("acct-1") is None


def test_paddle_payment_failed_keeps_access_until_period_end(paddle_app, store):
    with paddle_app.test_client() as c:
        c.post("/webhooks/paddle", data=paddle_fields(
            "subscription_created", alert_id="p3", subscription_id="sub_1",
            subscription_plan_id="2003", status="active", next_bill_date="2025-04-01"))
        r = c.post("/webhooks/paddle", data=paddle_fields(
            "subscription_payment_failed", alert_id="p4", subscription_id="sub_1"))
    assert r.status_code == 200 and r.get_json()["outcome"] == "ignored"
    rec = store.get_active("acct-1")
    assert rec.plan_tier.value == "unlimited" and rec.expires_at.month == 4
    assert store.get_event("paddle:p4")["status_hint"] == "past_due"


def test_paddle_bad_signature(paddle_app):
    fields = paddle_fields("payment_succeeded", alert_id="p5", order_id="ord_1")
    fields["sale_gross"] = "0.01"
    with paddle_app.test_client() as c:
        r = c.post("/webhooks/paddle", data=fields)
    assert r.status_code == 400 and r.get_json()["error"] == "bad_signature"


# ---------- plan / usage API ----------

def test_plan_snapshot_without_plan(user_client):
    data = user_client.get("/api/plan").get_json()
    assert data["tier"] == "free"
    assert data["state"] == "no_plan"
    assert data["isActive"] is False
    assert data["canRefund"] is False
    assert "executive" not in data["templates"]


def test_plan_snapshot_with_plan(user_client, buy):
    buy("extended")
    data = user_client.get("/api/plan").get_json()
    assert data["tier"] == "extended"
    assert data["state"] == "active_paid"
    assert data["quotas"]["ai"] == {"used": 0, "limit": 30, "remaining": 30}
    assert data["canRefund"] is True
    assert data["support"] == "email"


def test_consume_export_until_quota(user_client, buy):
    buy("basic")
    for i in range(5):
        r = user_client.post("/api/usage/export")
        assert r.status_code == 200
        assert r.get_json()["used"] == i + 1
    r = user_client.post("/api/usage/export")
    assert r.status_code == 402
    body = r.get_json()
    assert body["error"] == "quota_exceeded" and body["pricingUrl"] == "/pricing"


def test_consume_without_plan_prompts_subscribe(user_client):
    r = user_client.post("/api/usage/ai")
    assert r.status_code == 402
    assert r.get_json()["error"] == "no_active_plan"


def test_consume_unknown_feature(user_client):
    assert user_client.post("/api/usage/teleport").status_code == 400


def test_consume_with_idempotency_key(user_client, buy, store):
    buy("basic")
    for _ in range(3):
        r = user_client.post("/api/usage/export", headers={"Idempotency-Key": "abc"})
        assert r.status_code == 200
    assert store.get_active("acct-1").exports_used == 1


def test_limits(user_client, buy):
    buy("basic")
    user_client.post("/api/usage/export")
    data = user_client.get("/api/limits").get_json()
    assert data["features"]["export"] == {"used": 1, "max": 5, "left": 4}


def test_template_access(user_client, buy):
    assert user_client.get("/api/templates/classic/access").get_json()["allowed"] is True
    assert user_client.get("/api/templates/executive/access").get_json()["locked"] is True
    buy("extended")
    assert user_client.get("/api/templates/executive/access").get_json()["allowed"] is True


def test_conflict_surfaces_as_503(app, buy, store, monkeypatch):
    buy("basic")
    monkeypatch.setattr(store, "compare_and_set", lambda *a, **kw: None)
    with app.test_client(user=User("acct-1")) as c:
        r = c.post("/api/usage/export")
    assert r.status_code == 503
    assert r.get_json()["error"] == "conflict"


# ---------- require_capability ----------

@pytest.fixture
def feature_app(app):
    @app.post("/api/test/enhance")
    @require_capability(Action.USE_AI)
    def enhance():
        return jsonify(ok=True)

    @app.post("/api/test/export")
    @require_capability(Action.EXPORT, consume=True)
    def export():
        return jsonify(ok=True, used=g.usage.used)

    return app


def test_require_capability_denies_without_plan(feature_app):
    with feature_app.test_client(user=User("acct-1")) as c:
        r = c.post("/api/test/enhance")
    assert r.status_code == 402
    assert r.get_json()["error"] == "upgrade_required"


def test_require_capability_basic_plan_has_no_ai(feature_app, buy):
    buy("basic")
    with feature_app.test_client(user=User("acct-1")) as c:
        assert c.post("/api/test/enhance").status_code == 402
        r = c.post("/api/test/export")
    assert r.status_code == 200 and r.get_json()["used"] == 1


def test_require_capability_needs_login(feature_app):
    with feature_app.test_client() as c:
        assert c.post("/api/test/enhance").status_code == 401


# ---------- permissive policy ----------

def test_permissive_policy_allows_everything_without_counting(monkeypatch, clock):
    from planguard import create_app
    from planguard.config import TestConfig
    from flask_login import FlaskLoginClient

    monkeypatch.setattr(TestConfig, "ENTITLEMENT_POLICY", "permissive")
    store = MemoryPlanStore()
    app = create_app("test", clock=clock, store=store)
    app.test_client_class = FlaskLoginClient
    with app.test_client(user=User("acct-1")) as c:
        r = c.post("/api/usage/ai")
        assert r.status_code == 200 and r.get_json()["bypass"] == "permissive"
        assert c.get("/api/templates/executive/access").get_json()["allowed"] is True
        assert c.get("/api/plan").get_json()["enforced"] is False
    assert store.all_records() == []


# ---------- session ----------

class _FakeAuth:
    def get_user(self, token):
        if token != "good":
            raise ValueError("invalid JWT")
        return SimpleNamespace(user=SimpleNamespace(id="acct-7", email="a@example.com"))


def test_session_login_and_logout(app, buy):
    app.config["SUPABASE_ADMIN"] = SimpleNamespace(auth=_FakeAuth())
    with app.test_client() as c:
        assert c.post("/api/session/login", json={"access_token": "bad"}).status_code == 401
        r = c.post("/api/session/login", json={"access_token": "good"})
        assert r.status_code == 200 and r.get_json()["auth_id"] == "acct-7"
        assert c.get("/api/plan").get_json()["tier"] == "free"
        c.post("/api/session/logout")
        assert c.get("/api/plan").status_code == 401
