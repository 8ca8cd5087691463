from __future__ import annotations
from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required

from ..services.gate import Action

plan_bp = Blueprint("plan", __name__)

PRICING_URL = "/pricing"


def _gate():
    return current_app.config["CAPABILITY_GATE"]


@plan_bp.get("/api/plan")
@login_required
def api_plan():
    return jsonify(_gate().plan_snapshot(current_user.id))


@plan_bp.get("/api/limits")
@login_required
def api_limits():
    usage = current_app.config["USAGE_SERVICE"]
    return jsonify(usage.usage_summary(current_user.id))


@plan_bp.get("/api/templates/<template_id>/access")
@login_required
def api_template_access(template_id: str):
    allowed = _gate().can_access_template(current_user.id, template_id)
    return jsonify(templateId=template_id, allowed=allowed, locked=not allowed)


@plan_bp.post("/api/usage/<action>")
@login_required
def api_consume(action: str):
    try:
        act = Action(action.lower())
    except ValueError:
        return jsonify(error="bad_request", message=f"Unknown feature: {action}"), 400

    key = (request.headers.get("Idempotency-Key") or "").strip() or None
    result = _gate().consume(current_user.id, act, idempotency_key=key)
    if result.ok:
        return jsonify(result.to_payload()), 200

    current_app.logger.info("usage denied: account=%s feature=%s error=%s",
                            current_user.id, act.value, result.error)
    return jsonify(dict(result.to_payload(), pricingUrl=PRICING_URL)), 402
