# planguard/__init__.py
from __future__ import annotations
import logging
from datetime import datetime, timezone

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from .config import ProdConfig, get_config
from .errors import PlanguardError
from .extensions import init_supabase, login_manager
from .routes import register_routes
from .services.billing import BillingEventProcessor
from .services.gate import CapabilityGate
from .services.models import utcnow
from .services.policy import policy_from_name
from .services.store import MemoryPlanStore, SupabasePlanStore
from .services.usage import UsageCounterService


def create_app(env: str | None = None, *, clock=None, store=None) -> Flask:
    """
    Build the app. `clock` and `store` override the configured ones (tests
    freeze time and share a memory store across app instances).
    """
    app = Flask(__name__)
    config = get_config(env)
    app.config.from_object(config)

    # CORS & logging
    CORS(app, origins=app.config["CORS_ORIGINS"] or "*", supports_credentials=True)
    logging.basicConfig(level=logging.INFO)

    policy = policy_from_name(app.config["ENTITLEMENT_POLICY"])
    if config is ProdConfig and not policy.enforce:
        raise RuntimeError("Permissive entitlement policy cannot be enabled in production")

    clock = clock or utcnow

    # ---------- Plan store ----------
    if store is None:
        backend = (app.config["PLAN_STORE_BACKEND"] or "supabase").lower()
        if backend == "memory":
            store = MemoryPlanStore()
        elif backend == "supabase":
            app.config["SUPABASE_ADMIN"] = init_supabase(
                app.config["SUPABASE_URL"], app.config["SUPABASE_SERVICE_ROLE_KEY"]
            )
            store = SupabasePlanStore(app.config["SUPABASE_ADMIN"])
        else:
            raise RuntimeError(f"Unknown PLAN_STORE_BACKEND: {backend}")

    usage = UsageCounterService(
        store,
        clock=clock,
        max_retries=app.config["CONSUME_MAX_RETRIES"],
        backoff=app.config["CONSUME_RETRY_BACKOFF"],
    )
    app.config["PLAN_STORE"] = store
    app.config["USAGE_SERVICE"] = usage
    app.config["BILLING_PROCESSOR"] = BillingEventProcessor(store, clock=clock)
    app.config["CAPABILITY_GATE"] = CapabilityGate(store, usage, policy, clock)
    app.logger.info("planguard: store=%s policy=%s", type(store).__name__, policy.name)

    # ---------- Flask-Login ----------
    login_manager.init_app(app)

    # ---------- Errors ----------
    @app.errorhandler(PlanguardError)
    def _eh_planguard(e: PlanguardError):
        if e.status >= 500:
            app.logger.warning("%s on %s: %s", e.code, request.path, e.message)
        return jsonify(e.to_payload()), e.status

    @app.errorhandler(401)
    def _eh_401(e):
        return jsonify(error="auth_required",
                       message="Please sign up or log in to use this feature."), 401

    @app.errorhandler(Exception)
    def _eh_unhandled(e):
        if isinstance(e, HTTPException):
            return e
        app.logger.exception("unhandled error on %s", request.path)
        return jsonify(error="server_error", message="Something went wrong"), 500

    # ---------- Blueprints ----------
    register_routes(app)

    @app.get("/healthz")
    def health():
        return {"ok": True, "ts": datetime.now(timezone.utc).isoformat()}

    return app
