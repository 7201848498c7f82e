"""Work order state machine: legal transitions and their field effects.

Lifecycle:
    draft → sent → viewed → accepted → in_progress ⇄ blocked
                     │                     │
                     ├→ rejected           └→ done → inspected
                     └→ viewed (counter-offer pending / decided)
    inspected | done | rejected → closed

Pure computation: ``apply`` maps (snapshot, event, payload) to the next
snapshot or raises. It never touches storage and never bumps ``version``;
the store's compare-and-swap does that.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from ..schemas.work_orders import (
    CounterOfferStatus,
    Proposal,
    WorkOrderSnapshot,
    WorkOrderStatus,
)
from .errors import (
    AlreadyPending,
    IllegalTransition,
    NothingPending,
    UseCounterOfferInstead,
    ValidationError,
)


class Event(str, Enum):
    SEND = "send"
    VIEW = "view"
    ACCEPT = "accept"
    REJECT = "reject"
    SUBMIT_COUNTER = "submit_counter"
    APPROVE_COUNTER = "approve_counter"
    REJECT_COUNTER = "reject_counter"
    START = "start"
    BLOCK = "block"
    UNBLOCK = "unblock"
    COMPLETE = "complete"
    INSPECT = "inspect"
    CLOSE = "close"


S = WorkOrderStatus

# {(from_status, event): to_status}
_TRANSITIONS: dict[tuple[WorkOrderStatus, Event], WorkOrderStatus] = {
    (S.draft, Event.SEND): S.sent,
    (S.sent, Event.VIEW): S.viewed,
    (S.viewed, Event.ACCEPT): S.accepted,
    (S.viewed, Event.REJECT): S.rejected,
    (S.viewed, Event.SUBMIT_COUNTER): S.viewed,
    (S.viewed, Event.APPROVE_COUNTER): S.accepted,
    (S.viewed, Event.REJECT_COUNTER): S.viewed,
    (S.accepted, Event.START): S.in_progress,
    (S.in_progress, Event.BLOCK): S.blocked,
    (S.blocked, Event.UNBLOCK): S.in_progress,
    (S.in_progress, Event.COMPLETE): S.done,
    (S.done, Event.INSPECT): S.inspected,
    (S.inspected, Event.CLOSE): S.closed,
    (S.done, Event.CLOSE): S.closed,
    (S.rejected, Event.CLOSE): S.closed,
}

# Timestamp written by the transition that reaches the state
_TIMESTAMPS: dict[Event, str] = {
    Event.SEND: "sent_at",
    Event.VIEW: "viewed_at",
    Event.ACCEPT: "accepted_at",
    Event.APPROVE_COUNTER: "accepted_at",
    Event.REJECT: "rejected_at",
    Event.START: "started_at",
    Event.COMPLETE: "completed_at",
    Event.INSPECT: "inspected_at",
    Event.CLOSE: "closed_at",
}

_OPEN_FOR_PROPOSAL = {CounterOfferStatus.none, CounterOfferStatus.rejected}

# Status from which contractor links stop working
ACCESS_BLOCKING_STATUSES = frozenset({S.closed, S.rejected})
TERMINAL_STATUSES = frozenset({S.closed})


@dataclass(frozen=True)
class TransitionPayload:
    proposal: Optional[Proposal] = None
    reason: Optional[str] = None
    note: Optional[str] = None


def terms_differ(snapshot: WorkOrderSnapshot, proposal: Optional[Proposal]) -> bool:
    """True when any supplied term differs from the baseline; absent terms never differ."""
    if proposal is None:
        return False
    pairs = (
        (proposal.proposed_cost, snapshot.estimated_cost),
        (proposal.proposed_start_date, snapshot.requested_start_date),
        (proposal.proposed_end_date, snapshot.requested_end_date),
    )
    return any(proposed is not None and proposed != baseline for proposed, baseline in pairs)


class WorkOrderStateMachine:
    """Validates and computes work order transitions."""

    @staticmethod
    def target(current: WorkOrderStatus, event: Event) -> WorkOrderStatus:
        """Resulting status for ``event`` or IllegalTransition."""
        try:
            return _TRANSITIONS[(WorkOrderStatus(current), Event(event))]
        except KeyError:
            raise IllegalTransition(current, event)

    @staticmethod
    def can_apply(current: WorkOrderStatus, event: Event) -> bool:
        return (WorkOrderStatus(current), Event(event)) in _TRANSITIONS

    @staticmethod
    def allowed_events(current: WorkOrderStatus) -> set[Event]:
        return {event for (status, event) in _TRANSITIONS if status == current}

    @staticmethod
    def is_terminal(status: WorkOrderStatus) -> bool:
        return WorkOrderStatus(status) in TERMINAL_STATUSES

    @staticmethod
    def blocks_access(status: WorkOrderStatus) -> bool:
        return WorkOrderStatus(status) in ACCESS_BLOCKING_STATUSES

    @staticmethod
    def apply(
        snapshot: WorkOrderSnapshot,
        event: Event,
        now: datetime,
        payload: Optional[TransitionPayload] = None,
    ) -> WorkOrderSnapshot:
        """Return the next snapshot for ``event``; the input is never modified."""
        event = Event(event)
        payload = payload or TransitionPayload()
        to_status = WorkOrderStateMachine.target(snapshot.status, event)

        changes: dict = {"status": to_status}
        stamp = _TIMESTAMPS.get(event)
        if stamp and getattr(snapshot, stamp) is None:
            changes[stamp] = now

        handler = _EFFECTS.get(event)
        if handler is not None:
            changes.update(handler(snapshot, payload, now))

        return snapshot.model_copy(update=changes)


# Effects: guards plus extra field changes per event

def _accept(snapshot: WorkOrderSnapshot, payload: TransitionPayload, now: datetime) -> dict:
    if terms_differ(snapshot, payload.proposal):
        raise UseCounterOfferInstead()
    changes: dict = {}
    if payload.proposal is not None and payload.proposal.contractor_notes:
        changes["contractor_notes"] = payload.proposal.contractor_notes
    return changes


def _reject(snapshot: WorkOrderSnapshot, payload: TransitionPayload, now: datetime) -> dict:
    reason = (payload.reason or "").strip()
    if not reason:
        raise ValidationError("Rejection reason is required", field="rejection_reason")
    changes: dict = {"rejection_reason": reason}
    if snapshot.counter_offer_status == CounterOfferStatus.pending:
        changes.update(
            counter_offer_status=CounterOfferStatus.rejected,
            counter_offer_responded_at=now,
            counter_offer_response_notes=payload.note,
        )
    return changes


def _submit_counter(snapshot: WorkOrderSnapshot, payload: TransitionPayload, now: datetime) -> dict:
    if snapshot.counter_offer_status == CounterOfferStatus.pending:
        raise AlreadyPending()
    if snapshot.counter_offer_status not in _OPEN_FOR_PROPOSAL:
        raise IllegalTransition(snapshot.status, Event.SUBMIT_COUNTER)
    proposal = payload.proposal
    if not terms_differ(snapshot, proposal):
        raise ValidationError(
            "Counter-offer must change the cost or dates; to keep the terms, accept instead",
            field="proposal",
        )
    # Dates left out of the proposal keep the baseline value on approval
    start = proposal.proposed_start_date or snapshot.requested_start_date
    end = proposal.proposed_end_date or snapshot.requested_end_date
    if start and end and end < start:
        raise ValidationError("Proposed end date cannot be before the start date", field="proposed_end_date")
    return {
        "counter_offer_status": CounterOfferStatus.pending,
        "proposed_cost": proposal.proposed_cost,
        "proposed_start_date": proposal.proposed_start_date,
        "proposed_end_date": proposal.proposed_end_date,
        "contractor_notes": proposal.contractor_notes,
        "counter_offer_responded_at": None,
        "counter_offer_response_notes": None,
    }


def _approve_counter(snapshot: WorkOrderSnapshot, payload: TransitionPayload, now: datetime) -> dict:
    if snapshot.counter_offer_status != CounterOfferStatus.pending:
        raise NothingPending()
    changes: dict = {
        "counter_offer_status": CounterOfferStatus.approved,
        "counter_offer_responded_at": now,
        "counter_offer_response_notes": payload.note,
    }
    # Promote proposed terms into the baseline in the same write as the status change
    if snapshot.proposed_cost is not None:
        changes["estimated_cost"] = snapshot.proposed_cost
    if snapshot.proposed_start_date is not None:
        changes["requested_start_date"] = snapshot.proposed_start_date
    if snapshot.proposed_end_date is not None:
        changes["requested_end_date"] = snapshot.proposed_end_date
    return changes


def _reject_counter(snapshot: WorkOrderSnapshot, payload: TransitionPayload, now: datetime) -> dict:
    if snapshot.counter_offer_status != CounterOfferStatus.pending:
        raise NothingPending()
    return {
        "counter_offer_status": CounterOfferStatus.rejected,
        "counter_offer_responded_at": now,
        "counter_offer_response_notes": payload.note,
        "proposed_cost": None,
        "proposed_start_date": None,
        "proposed_end_date": None,
        "contractor_notes": None,
    }


_EFFECTS = {
    Event.ACCEPT: _accept,
    Event.REJECT: _reject,
    Event.SUBMIT_COUNTER: _submit_counter,
    Event.APPROVE_COUNTER: _approve_counter,
    Event.REJECT_COUNTER: _reject_counter,
}
