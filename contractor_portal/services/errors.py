"""
Typed outcomes for the contractor portal.

Every expected failure is a PortalError carrying a machine-readable ``kind``.
Routes never build error bodies by hand; the handler registered in main
renders ``to_dict()``. Store unavailability is not modelled here and
propagates as-is.
"""
from typing import Any, Dict, Optional


USER_MESSAGES: Dict[str, str] = {
    "not_found": "This link is not valid.",
    "revoked": "This link has been replaced by a newer one. Please use the latest link you received.",
    "expired": "This link has expired. You can request a new link.",
    "work_order_closed": "This work order is no longer open. Please contact the operator.",
    "illegal_transition": "This action is not possible in the work order's current state.",
    "already_pending": "A proposal is already awaiting a decision.",
    "nothing_pending": "There is no pending proposal to decide on.",
    "use_counter_offer_instead": "To accept with different terms, submit a counter-offer.",
    "version_conflict": "This order changed in the meantime. Please reload and try again.",
    "validation_error": "Some fields are missing or invalid.",
}

RECOVERY_HINTS: Dict[str, str] = {
    "not_found": "contact_operator",
    "revoked": "use_latest_link",
    "expired": "request_new_link",
    "work_order_closed": "contact_operator",
    "illegal_transition": "reload",
    "already_pending": "wait_for_decision",
    "nothing_pending": "reload",
    "use_counter_offer_instead": "counter_offer",
    "version_conflict": "reload",
    "validation_error": "fix_input",
}


class PortalError(Exception):
    kind = "portal_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or USER_MESSAGES.get(self.kind, self.kind)
        self.details = details
        super().__init__(self.message)

    @property
    def hint(self) -> Optional[str]:
        return RECOVERY_HINTS.get(self.kind)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "hint": self.hint,
            "details": {k: _jsonable(v) for k, v in self.details.items()},
        }


def _jsonable(value: Any) -> Any:
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


# Access errors (token or entity-derived)

class AccessError(PortalError):
    status_code = 403


class TokenNotFound(AccessError):
    kind = "not_found"
    status_code = 404


class TokenRevoked(AccessError):
    kind = "revoked"


class TokenExpired(AccessError):
    kind = "expired"
    status_code = 410


class WorkOrderClosed(AccessError):
    kind = "work_order_closed"
    status_code = 409


class WorkOrderNotFound(PortalError):
    kind = "not_found"
    status_code = 404

    def __init__(self, message: Optional[str] = None, **details: Any):
        super().__init__(message or "Work order not found", **details)


# Workflow errors

class IllegalTransition(PortalError):
    kind = "illegal_transition"
    status_code = 409

    def __init__(self, current_status: Any, event: Any, message: Optional[str] = None):
        self.current_status = current_status
        self.event = event
        super().__init__(
            message or f"Cannot apply '{_jsonable(event)}' to work order in '{_jsonable(current_status)}' status",
            current_status=current_status,
            event=event,
        )


class AlreadyPending(PortalError):
    kind = "already_pending"
    status_code = 409


class NothingPending(PortalError):
    kind = "nothing_pending"
    status_code = 409


class UseCounterOfferInstead(PortalError):
    kind = "use_counter_offer_instead"
    status_code = 422


class VersionConflict(PortalError):
    kind = "version_conflict"
    status_code = 409

    def __init__(self, expected_version: int, current_version: Optional[int] = None):
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(expected_version=expected_version, current_version=current_version)


class ValidationError(PortalError):
    kind = "validation_error"
    status_code = 422
