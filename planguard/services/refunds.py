# planguard/services/refunds.py
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict

from .models import PlanRecord
from .policy import policy_for


def first_export_changes(record: PlanRecord, now: datetime) -> Dict[str, Any]:
    """
    Field changes carried by the account's first export on this record.
    `first_export_at` is write-once, and the refund window closes with it.
    """
    if record.first_export_at is not None:
        return {}
    return {"first_export_at": now, "can_refund": False}


def merge_can_refund(current: bool, proposed: bool) -> bool:
    # true -> false only
    return bool(current) and bool(proposed)


def refund_eligible(record: PlanRecord | None, now: datetime) -> bool:
    if record is None or not record.is_live(now):
        return False
    if not policy_for(record.plan_tier).refundable:
        return False
    return bool(record.can_refund) and record.first_export_at is None
