# tests/test_smoke.py
import pytest
from planguard import create_app
from planguard.config import ProdConfig


@pytest.fixture
def client():
    app = create_app("test")
    with app.test_client() as c:
        yield c


def test_app_boots(client):
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.get_json()["ok"] is True


def test_plan_requires_login(client):
    r = client.get("/api/plan")
    assert r.status_code == 401
    assert r.is_json
    assert r.get_json().get("error") == "auth_required"


def test_session_login_requires_token(client):
    r = client.post("/api/session/login", json={})
    assert r.status_code == 400
    assert r.get_json().get("error") == "bad_request"


def test_collaborators_are_wired():
    app = create_app("test")
    for key in ("PLAN_STORE", "USAGE_SERVICE", "BILLING_PROCESSOR", "CAPABILITY_GATE"):
        assert app.config[key] is not None
    assert app.config["CAPABILITY_GATE"].enforcing


def test_permissive_policy_refused_in_production(monkeypatch):
    monkeypatch.setattr(ProdConfig, "ENTITLEMENT_POLICY", "permissive")
    with pytest.raises(RuntimeError, match="production"):
        create_app("production")


def test_unknown_policy_name_fails_fast(monkeypatch):
    from planguard.config import TestConfig
    monkeypatch.setattr(TestConfig, "ENTITLEMENT_POLICY", "yolo")
    with pytest.raises(ValueError):
        create_app("test")


def test_provider_config_is_webhook_only():
    from planguard.config import paddle_map
    app = create_app("test")
    assert "STRIPE_SECRET_KEY" not in app.config
    assert paddle_map(app.config) == {"2001": "basic", "2002": "extended", "2003": "unlimited"}
