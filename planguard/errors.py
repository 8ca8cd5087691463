# planguard/errors.py
from __future__ import annotations


class PlanguardError(Exception):
    """Base class. `code` is the stable string sent to clients in the JSON body."""

    code = "server_error"
    status = 500

    def __init__(self, message: str | None = None, **details):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        self.details = details

    def to_payload(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


# ---------- user-facing, recoverable ----------

class QuotaExceeded(PlanguardError):
    """You have reached the limit of your plan. Upgrade to keep going."""
    code = "quota_exceeded"
    status = 402


class NoActivePlan(PlanguardError):
    """This feature requires an active plan. Choose a plan to continue."""
    code = "no_active_plan"
    status = 402


class CapabilityDenied(PlanguardError):
    """Your current plan does not include this feature."""
    code = "upgrade_required"
    status = 402


# ---------- billing input ----------

class InvalidEventType(PlanguardError):
    """Unmapped billing event type."""
    code = "invalid_event_type"
    status = 200


class UnparsableEvent(PlanguardError):
    """Billing event could not be parsed."""
    code = "unparsable_event"
    status = 200


class SignatureVerificationFailed(PlanguardError):
    """Webhook signature did not verify."""
    code = "bad_signature"
    status = 400


# ---------- infrastructure, transient ----------

class ConcurrentModificationConflict(PlanguardError):
    """The plan record kept changing underneath us. Please try again."""
    code = "conflict"
    status = 503


class StorageUnavailable(PlanguardError):
    """Plan storage is unavailable. Please try again."""
    code = "storage_unavailable"
    status = 503
