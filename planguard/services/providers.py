# planguard/services/providers.py
"""
Payment-provider adapters: verify a webhook, then turn the provider's payload
into a BillingEvent. Nothing here touches plan state.
"""
from __future__ import annotations
import base64
import hashlib
import hmac
import json
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import stripe
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from .models import BillingEvent, EventType, parse_ts
from .policy import PlanTier, parse_tier, tier_for_amount, tier_for_price
from ..errors import InvalidEventType, SignatureVerificationFailed, UnparsableEvent


def _loads(payload) -> Dict[str, Any]:
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise UnparsableEvent("Webhook body is not JSON") from e
    if not isinstance(data, dict):
        raise UnparsableEvent("Webhook body is not an object")
    return data


# ---------- Stripe ----------

def verify_stripe(payload: str, sig_header: str | None, secret: str | None) -> Dict[str, Any]:
    if not secret:
        raise SignatureVerificationFailed("Stripe webhook secret is not configured")
    if not sig_header:
        raise SignatureVerificationFailed("Missing Stripe-Signature header")
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret,
                                              stripe.Webhook.DEFAULT_TOLERANCE)
    except stripe.SignatureVerificationError as e:
        raise SignatureVerificationFailed("Bad signature") from e
    return _loads(payload)


def _stripe_period_end(sub: Dict[str, Any]):
    end = sub.get("current_period_end")
    if end is None:
        # newer API versions carry the period on the subscription items
        items = (sub.get("items") or {}).get("data") or []
        end = items[0].get("current_period_end") if items else None
    return parse_ts(end)


def _stripe_price_id(sub: Dict[str, Any]) -> Optional[str]:
    items = (sub.get("items") or {}).get("data") or []
    if not items:
        return None
    return ((items[0] or {}).get("price") or {}).get("id")


def _stripe_invoice_subscription(inv: Dict[str, Any]) -> Optional[str]:
    sub = inv.get("subscription")
    if sub:
        return sub if isinstance(sub, str) else sub.get("id")
    details = ((inv.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def normalize_stripe(event: Dict[str, Any], price_map: Dict[str, str] | None = None) -> BillingEvent:
    try:
        etype = event["type"]
        eid = event["id"]
        obj = event["data"]["object"]
    except (KeyError, TypeError) as e:
        raise UnparsableEvent("Stripe event is missing type/id/data.object") from e

    metadata = obj.get("metadata") or {}
    account = metadata.get("user_id") or obj.get("client_reference_id")
    base = dict(
        provider_event_id=eid,
        provider="stripe",
        account_ref=account,
        customer_ref=obj.get("customer") if isinstance(obj.get("customer"), str) else None,
        raw=event,
    )

    if etype == "checkout.session.completed":
        if obj.get("payment_status") not in ("paid", "no_payment_required"):
            raise InvalidEventType(f"checkout {obj.get('id')} not paid", event_type=etype)
        subscription_mode = obj.get("mode") == "subscription"
        tier = (parse_tier(metadata.get("plan") or metadata.get("plan_code"))
                or tier_for_price(metadata.get("price_id"), price_map)
                or (PlanTier.UNLIMITED if subscription_mode else tier_for_amount(obj.get("amount_total"))))
        return BillingEvent(
            event_type=EventType.ORDER_PAID,
            tier_hint=tier.value if tier else None,
            amount=obj.get("amount_total"),
            currency=(obj.get("currency") or "").upper() or None,
            subscription_ref=obj.get("subscription") if subscription_mode else None,
            order_ref=obj.get("payment_intent") or obj.get("id"),
            **base,
        )

    if etype in ("customer.subscription.created", "customer.subscription.updated"):
        status = obj.get("status")
        tier = tier_for_price(_stripe_price_id(obj), price_map) or PlanTier.UNLIMITED
        created = etype.endswith("created") and status in ("active", "trialing")
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_CREATED if created else EventType.SUBSCRIPTION_UPDATED,
            tier_hint=tier.value,
            period_end=_stripe_period_end(obj),
            subscription_ref=obj.get("id"),
            status_hint=status,
            **base,
        )

    if etype == "customer.subscription.deleted":
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_CANCELLED,
            subscription_ref=obj.get("id"),
            status_hint=obj.get("status"),
            **base,
        )

    if etype in ("invoice.paid", "invoice.payment_succeeded"):
        sub_id = _stripe_invoice_subscription(obj)
        if not sub_id:
            raise InvalidEventType("invoice without subscription", event_type=etype)
        lines = (obj.get("lines") or {}).get("data") or []
        period_end = parse_ts(((lines[0] or {}).get("period") or {}).get("end")) if lines else None
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_UPDATED,
            period_end=period_end,
            subscription_ref=sub_id,
            status_hint="active",
            amount=obj.get("amount_paid"),
            currency=(obj.get("currency") or "").upper() or None,
            **base,
        )

    if etype == "charge.refunded":
        if obj.get("refunded") is False:
            raise InvalidEventType("partial refund", event_type=etype)
        return BillingEvent(
            event_type=EventType.ORDER_REFUNDED,
            order_ref=obj.get("payment_intent") or obj.get("id"),
            amount=obj.get("amount_refunded"),
            currency=(obj.get("currency") or "").upper() or None,
            **base,
        )

    raise InvalidEventType(f"Unhandled Stripe event {etype}", event_type=etype)


# ---------- Lemon Squeezy ----------

def verify_lemon(body: bytes, signature: str | None, secret: str | None) -> Dict[str, Any]:
    if not secret:
        raise SignatureVerificationFailed("Lemon Squeezy webhook secret is not configured")
    if not signature:
        raise SignatureVerificationFailed("Missing X-Signature header")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip()):
        raise SignatureVerificationFailed("Bad signature")
    return _loads(body)


def _lemon_tier(custom: Dict[str, Any], attrs: Dict[str, Any], product_map: Dict[str, str] | None):
    tier = parse_tier(custom.get("plan_id") or custom.get("plan"))
    if tier:
        return tier
    product_id = attrs.get("product_id")
    if product_id is None:
        product_id = (attrs.get("first_order_item") or {}).get("product_id")
    if product_id is not None and product_map:
        return parse_tier(product_map.get(str(product_id)))
    return None


def normalize_lemon(payload: Dict[str, Any], product_map: Dict[str, str] | None = None) -> BillingEvent:
    try:
        meta = payload["meta"]
        name = meta["event_name"]
        data = payload["data"]
        attrs = data.get("attributes") or {}
        object_id = str(data["id"])
    except (KeyError, TypeError, AttributeError) as e:
        raise UnparsableEvent("Lemon Squeezy payload is missing meta/data") from e

    custom = meta.get("custom_data") or {}
    # Lemon Squeezy has no per-event id; (event, object, object version) is stable across redeliveries.
    eid = f"lemon:{name}:{object_id}:{attrs.get('updated_at') or attrs.get('created_at') or ''}"
    tier = _lemon_tier(custom, attrs, product_map)
    customer = attrs.get("customer_id")
    base = dict(
        provider_event_id=eid,
        provider="lemonsqueezy",
        account_ref=custom.get("user_id"),
        customer_ref=str(customer) if customer is not None else None,
        tier_hint=tier.value if tier else None,
        raw=payload,
    )

    if name == "order_created":
        if attrs.get("status") != "paid":
            raise InvalidEventType(f"order {object_id} not paid", event_type=name)
        return BillingEvent(
            event_type=EventType.ORDER_PAID,
            order_ref=object_id,
            amount=attrs.get("total"),
            currency=attrs.get("currency"),
            **base,
        )

    if name in ("subscription_created", "subscription_updated",
                "subscription_cancelled", "subscription_expired"):
        order_id = attrs.get("order_id")
        kind = {
            "subscription_created": EventType.SUBSCRIPTION_CREATED,
            "subscription_updated": EventType.SUBSCRIPTION_UPDATED,
            "subscription_cancelled": EventType.SUBSCRIPTION_CANCELLED,
            "subscription_expired": EventType.SUBSCRIPTION_EXPIRED,
        }[name]
        return BillingEvent(
            event_type=kind,
            subscription_ref=object_id,
            order_ref=str(order_id) if order_id is not None and kind is EventType.SUBSCRIPTION_CREATED else None,
            period_end=parse_ts(attrs.get("renews_at") or attrs.get("ends_at")),
            status_hint=attrs.get("status"),
            **base,
        )

    if name == "order_refunded":
        return BillingEvent(
            event_type=EventType.ORDER_REFUNDED,
            order_ref=object_id,
            amount=attrs.get("refunded_amount"),
            currency=attrs.get("currency"),
            **base,
        )

    raise InvalidEventType(f"Unhandled Lemon Squeezy event {name}", event_type=name)


# ---------- Paddle (classic alerts) ----------

def _paddle_message(fields: Dict[str, Any]) -> bytes:
    return "&".join(f"{k}={fields[k]}" for k in sorted(fields) if k != "p_signature").encode("utf-8")


def verify_paddle(fields: Dict[str, Any], signature: str | None, public_key_pem: str | None) -> Dict[str, Any]:
    """RSA-SHA1 over the sorted `key=value` fields, base64 in `p_signature`."""
    if not public_key_pem:
        raise SignatureVerificationFailed("Paddle public key is not configured")
    signature = signature or fields.get("p_signature")
    if not signature:
        raise SignatureVerificationFailed("Missing p_signature")
    try:
        key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
        key.verify(base64.b64decode(signature), _paddle_message(fields),
                   padding.PKCS1v15(), hashes.SHA1())
    except (InvalidSignature, ValueError, TypeError) as e:
        raise SignatureVerificationFailed("Bad signature") from e
    return {k: v for k, v in fields.items() if k != "p_signature"}


def _paddle_passthrough(fields: Dict[str, Any]) -> Dict[str, Any]:
    try:
        data = json.loads(fields.get("passthrough") or "{}")
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _paddle_cents(value) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(Decimal(str(value)) * 100)
    except (InvalidOperation, ValueError):
        return None


def _paddle_date(fields: Dict[str, Any], name: str):
    try:
        return parse_ts(fields.get(name))
    except ValueError as e:
        raise UnparsableEvent(f"Paddle {name} is not a date") from e


def normalize_paddle(fields: Dict[str, Any], plan_map: Dict[str, str] | None = None) -> BillingEvent:
    name = fields.get("alert_name")
    alert_id = fields.get("alert_id")
    if not name or not alert_id:
        raise UnparsableEvent("Paddle alert is missing alert_name/alert_id")

    passthrough = _paddle_passthrough(fields)
    plan_id = fields.get("subscription_plan_id") or fields.get("product_id")
    tier = (parse_tier(passthrough.get("planId") or passthrough.get("plan"))
            or (parse_tier(plan_map.get(str(plan_id))) if plan_id and plan_map else None))
    customer = fields.get("user_id")
    base = dict(
        provider_event_id=f"paddle:{alert_id}",
        provider="paddle",
        account_ref=passthrough.get("userId") or passthrough.get("user_id"),
        customer_ref=str(customer) if customer else None,
        currency=fields.get("currency") or None,
        raw=dict(fields),
    )
    subscription_ref = fields.get("subscription_id") or None

    if name == "payment_succeeded":
        amount = _paddle_cents(fields.get("sale_gross"))
        tier = tier or tier_for_amount(amount)
        return BillingEvent(
            event_type=EventType.ORDER_PAID,
            tier_hint=tier.value if tier else None,
            amount=amount,
            order_ref=fields.get("order_id") or fields.get("checkout_id"),
            **base,
        )

    if name == "subscription_created":
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_CREATED,
            tier_hint=tier.value if tier else None,
            subscription_ref=subscription_ref,
            period_end=_paddle_date(fields, "next_bill_date"),
            status_hint=fields.get("status"),
            **base,
        )

    if name in ("subscription_updated", "subscription_payment_succeeded"):
        paid = name == "subscription_payment_succeeded"
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_UPDATED,
            tier_hint=tier.value if tier else None,
            subscription_ref=subscription_ref,
            period_end=_paddle_date(fields, "next_bill_date"),
            status_hint="active" if paid else fields.get("status"),
            amount=_paddle_cents(fields.get("sale_gross")) if paid else None,
            **base,
        )

    if name == "subscription_payment_failed":
        # access runs to the end of the paid period; Paddle retries the charge
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_UPDATED,
            subscription_ref=subscription_ref,
            status_hint="past_due",
            **base,
        )

    if name == "subscription_cancelled":
        return BillingEvent(
            event_type=EventType.SUBSCRIPTION_CANCELLED,
            subscription_ref=subscription_ref,
            status_hint=fields.get("status"),
            **base,
        )

    if name == "payment_refunded":
        if (fields.get("refund_type") or "full") != "full":
            raise InvalidEventType("partial refund", event_type=name)
        return BillingEvent(
            event_type=EventType.ORDER_REFUNDED,
            order_ref=fields.get("order_id") or fields.get("checkout_id"),
            amount=_paddle_cents(fields.get("gross_refund")),
            **base,
        )

    raise InvalidEventType(f"Unhandled Paddle alert {name}", event_type=name)
