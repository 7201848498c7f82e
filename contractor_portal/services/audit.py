"""
Audit trail for work order actions.
Immutable events with integrity hashing; storage lives behind AuditEmitter.
"""
import hashlib
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from .state_machine import Event


EVENT_TYPES: Dict[Event, str] = {
    Event.SEND: "sent",
    Event.VIEW: "viewed",
    Event.ACCEPT: "accepted",
    Event.REJECT: "rejected",
    Event.SUBMIT_COUNTER: "counter_offer_submitted",
    Event.APPROVE_COUNTER: "counter_offer_approved",
    Event.REJECT_COUNTER: "counter_offer_rejected",
    Event.START: "started",
    Event.BLOCK: "blocked",
    Event.UNBLOCK: "unblocked",
    Event.COMPLETE: "completed",
    Event.INSPECT: "inspected",
    Event.CLOSE: "closed",
}

CREATED = "created"
LINK_ISSUED = "link_issued"
LINKS_REVOKED = "links_revoked"


@dataclass(frozen=True)
class Actor:
    type: str  # operator|contractor|system
    id: Optional[str] = None
    token_id: Optional[uuid.UUID] = None

    @classmethod
    def contractor(cls, email: str, token_id: uuid.UUID) -> "Actor":
        return cls(type="contractor", id=email, token_id=token_id)

    @classmethod
    def operator(cls, subject: str) -> "Actor":
        return cls(type="operator", id=subject)


@dataclass(frozen=True)
class AuditEvent:
    work_order_id: uuid.UUID
    event_type: str
    actor: Actor
    timestamp_utc: datetime
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    version: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def compute_integrity_hash(event: AuditEvent, integrity_secret: Optional[str]) -> Optional[str]:
    """
    SHA-256 over the canonical JSON of an event plus a secret.

    Args:
        event: Event to fingerprint
        integrity_secret: Secret mixed into the hash (None disables hashing)

    Returns:
        Hex digest, or None when no secret is configured
    """
    if not integrity_secret:
        return None
    canonical_data = {
        "work_order_id": str(event.work_order_id),
        "event_type": event.event_type,
        "actor_type": event.actor.type,
        "actor_id": event.actor.id,
        "token_id": str(event.actor.token_id) if event.actor.token_id else None,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "version": event.version,
        "timestamp_utc": event.timestamp_utc.isoformat(),
        "data": event.data or None,
    }
    # Remove None values and sort keys for consistency
    canonical_data = {k: v for k, v in canonical_data.items() if v is not None}
    canonical_json = json.dumps(canonical_data, sort_keys=True, default=str)
    return hashlib.sha256(f"{canonical_json}:{integrity_secret}".encode()).hexdigest()


def compute_diff(before: Dict, after: Dict) -> Dict:
    """
    Compute a diff between two dictionaries.

    Returns:
        Dict with before/after values for changed fields
    """
    diff = {}
    for key in set(before.keys()) | set(after.keys()):
        before_val = before.get(key)
        after_val = after.get(key)
        if before_val != after_val:
            diff[key] = {"before": before_val, "after": after_val}
    return diff


def to_json_safe(data: Dict[str, Any]) -> Dict[str, Any]:
    """Round-trip through JSON so dates, decimals and enums store as plain values."""
    return json.loads(json.dumps(data, default=str))
