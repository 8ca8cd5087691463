from __future__ import annotations
from flask import Blueprint, current_app, jsonify, request

from ..config import paddle_map, price_map, product_map
from ..errors import InvalidEventType, SignatureVerificationFailed, UnparsableEvent
from ..services.providers import (
    normalize_lemon, normalize_paddle, normalize_stripe, verify_lemon, verify_paddle, verify_stripe,
)

billing_bp = Blueprint("billing", __name__)


def _process(event):
    processor = current_app.config["BILLING_PROCESSOR"]
    # StorageUnavailable propagates to the 503 handler so the provider retries
    result = processor.process(event)
    return jsonify(received=True, **result.to_dict()), 200


def _acknowledge(provider: str, e):
    # Unknown or malformed events are acknowledged so the provider stops retrying
    current_app.logger.info("%s webhook ignored: %s (%s)", provider, e.message, e.code)
    return jsonify(received=True, outcome="ignored", detail=e.code), 200


@billing_bp.post("/webhooks/stripe")
def stripe_webhook():
    payload = request.get_data(as_text=True)
    sig_header = request.headers.get("Stripe-Signature")

    try:
        raw = verify_stripe(payload, sig_header, current_app.config.get("STRIPE_WEBHOOK_SECRET"))
    except SignatureVerificationFailed as e:
        current_app.logger.warning("stripe webhook rejected: %s", e.message)
        return jsonify(e.to_payload()), 400
    except UnparsableEvent as e:
        return _acknowledge("stripe", e)

    try:
        event = normalize_stripe(raw, price_map(current_app.config))
    except (InvalidEventType, UnparsableEvent) as e:
        return _acknowledge("stripe", e)
    return _process(event)


@billing_bp.post("/webhooks/lemonsqueezy")
def lemonsqueezy_webhook():
    body = request.get_data()
    signature = request.headers.get("X-Signature")

    try:
        raw = verify_lemon(body, signature, current_app.config.get("LEMON_WEBHOOK_SECRET"))
    except SignatureVerificationFailed as e:
        current_app.logger.warning("lemonsqueezy webhook rejected: %s", e.message)
        return jsonify(e.to_payload()), 400
    except UnparsableEvent as e:
        return _acknowledge("lemonsqueezy", e)

    try:
        event = normalize_lemon(raw, product_map(current_app.config))
    except (InvalidEventType, UnparsableEvent) as e:
        return _acknowledge("lemonsqueezy", e)
    return _process(event)


@billing_bp.post("/webhooks/paddle")
def paddle_webhook():
    # Paddle classic posts form fields; the signature travels as p_signature
    fields = request.form.to_dict()
    signature = request.headers.get("X-Paddle-Signature") or fields.get("p_signature")

    try:
        raw = verify_paddle(fields, signature, current_app.config.get("PADDLE_PUBLIC_KEY"))
    except SignatureVerificationFailed as e:
        current_app.logger.warning("paddle webhook rejected: %s", e.message)
        return jsonify(e.to_payload()), 400

    try:
        event = normalize_paddle(raw, paddle_map(current_app.config))
    except (InvalidEventType, UnparsableEvent) as e:
        return _acknowledge("paddle", e)
    return _process(event)
