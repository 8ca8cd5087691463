from __future__ import annotations
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_user, logout_user

from ..extensions import User

auth_session_bp = Blueprint("auth_session", __name__)


def _user_field(user, name):
    if isinstance(user, dict):
        return user.get(name)
    return getattr(user, name, None)


@auth_session_bp.post("/api/session/login")
def api_session_login():
    supabase = current_app.config.get("SUPABASE_ADMIN")
    data = request.get_json(silent=True) or {}
    token = (data.get("access_token") or "").strip()
    if not token:
        return jsonify(error="bad_request", message="Missing access_token"), 400
    if supabase is None:
        return jsonify(error="server_error", message="Auth backend not configured"), 500

    try:
        # Validate token & get user from Supabase
        res = supabase.auth.get_user(token)
    except Exception:
        current_app.logger.exception("session login failed")
        return jsonify(error="unauthorized", message="Invalid token"), 401

    user = getattr(res, "user", None) or {}
    auth_id = _user_field(user, "id")
    if not auth_id:
        return jsonify(error="unauthorized", message="Invalid token"), 401

    login_user(User(auth_id))
    return jsonify(ok=True, auth_id=auth_id)


@auth_session_bp.post("/api/session/logout")
def api_session_logout():
    logout_user()
    return jsonify(ok=True)
