from __future__ import annotations
from flask import Flask


def register_routes(app: Flask) -> None:
    from .auth_session import auth_session_bp
    from .billing import billing_bp
    from .plan import plan_bp

    app.register_blueprint(billing_bp)
    app.register_blueprint(plan_bp)
    app.register_blueprint(auth_session_bp)
