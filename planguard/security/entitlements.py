# planguard/security/entitlements.py
from __future__ import annotations
from functools import wraps

from flask import current_app, g, jsonify, request
from flask_login import current_user, login_required

from ..services.gate import Action


def require_capability(action, *, consume: bool = False):
    """
    Decorator for feature endpoints: @require_capability(Action.EXPORT, consume=True)
    - Denied checks return {error:"upgrade_required", ...} with HTTP 402.
    - With consume=True the unit is taken before the view runs (honouring an
      Idempotency-Key header) and the UsageResult is left on `g.usage`.
    """
    action = Action(action)

    def wrapper(fn):
        @wraps(fn)
        @login_required
        def inner(*args, **kwargs):
            gate = current_app.config["CAPABILITY_GATE"]
            account_id = current_user.id
            if not consume:
                if gate.can_do(account_id, action):
                    return fn(*args, **kwargs)
                return jsonify(
                    error="upgrade_required",
                    feature=action.value,
                    message="Upgrade to continue.",
                ), 402

            key = (request.headers.get("Idempotency-Key") or "").strip() or None
            result = gate.consume(account_id, action, idempotency_key=key)
            if not result.ok:
                return jsonify(result.to_payload()), 402
            g.usage = result
            return fn(*args, **kwargs)
        return inner
    return wrapper
