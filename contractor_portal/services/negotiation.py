"""Counter-offer negotiation on top of the ``viewed`` state.

Protocol:
    contractor  propose_counter  → counter_offer_status = pending (status stays viewed)
    operator    decide_counter   → approved: terms promoted + status accepted, one write
                                 → rejected: proposal cleared, contractor may retry
    contractor  direct_accept    → accepted on the baseline terms only
    operator    close_negotiation → pending proposal rejected + order rejected

At most one proposal can be pending: the proposal is a field set on the work
order row, and every write is a compare-and-swap on ``version``.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Optional, Union

import structlog

from ..schemas.work_orders import (
    CounterDecision,
    CounterOfferStatus,
    Proposal,
    WorkOrderSnapshot,
)
from .audit import Actor
from .errors import AlreadyPending, NothingPending, ValidationError
from .state_machine import Event, TransitionPayload
from .workflow import WorkOrderWorkflow


logger = structlog.get_logger(__name__)

OPERATOR_CLOSE_PREFIX = "Closed by operator"


class NegotiationEngine(WorkOrderWorkflow):
    """Single-pending-proposal negotiation with atomic decisions."""

    def propose_counter(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        proposal: Proposal,
        actor: Actor,
    ) -> WorkOrderSnapshot:
        """Store a contractor proposal; status is left at ``viewed``."""
        current = self.load(work_order_id)
        # A pending proposal wins over a stale version: the caller must wait for the decision
        if current.counter_offer_status == CounterOfferStatus.pending:
            raise AlreadyPending()
        current = self.load_at(work_order_id, expected_version)
        saved = self.commit(
            current,
            Event.SUBMIT_COUNTER,
            actor,
            TransitionPayload(proposal=proposal),
            data={"proposal": proposal.model_dump(exclude_none=True)},
        )
        logger.info("counter_offer_proposed", work_order_id=str(saved.id), version=saved.version)
        return saved

    def decide_counter(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        decision: CounterDecision,
        actor: Actor,
        note: Optional[str] = None,
    ) -> WorkOrderSnapshot:
        """Approve or reject the pending proposal (``close`` rejects the whole order)."""
        decision = CounterDecision(decision)
        if decision == CounterDecision.close:
            return self.close_negotiation(work_order_id, expected_version, actor, note)

        current = self.load_at(work_order_id, expected_version)
        if current.counter_offer_status != CounterOfferStatus.pending:
            raise NothingPending()
        event = Event.APPROVE_COUNTER if decision == CounterDecision.approved else Event.REJECT_COUNTER
        saved = self.commit(current, event, actor, TransitionPayload(note=note), data={"note": note} if note else None)
        logger.info(
            "counter_offer_decided",
            work_order_id=str(saved.id),
            decision=decision.value,
            status=saved.status.value,
        )
        return saved

    def direct_accept(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        actor: Actor,
        cost: Optional[Decimal] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> WorkOrderSnapshot:
        """
        Accept on the baseline terms.

        Supplied terms must match the baseline; anything else raises
        UseCounterOfferInstead so deviations always reach the operator.
        """
        current = self.load_at(work_order_id, expected_version)
        if current.counter_offer_status == CounterOfferStatus.pending:
            raise AlreadyPending()
        proposal = Proposal(
            proposed_cost=cost,
            proposed_start_date=start_date,
            proposed_end_date=end_date,
            contractor_notes=notes,
        )
        return self.commit(current, Event.ACCEPT, actor, TransitionPayload(proposal=proposal))

    def close_negotiation(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        actor: Actor,
        note: Optional[str] = None,
    ) -> WorkOrderSnapshot:
        """Reject the pending proposal and the order itself in one write."""
        current = self.load_at(work_order_id, expected_version)
        if current.counter_offer_status != CounterOfferStatus.pending:
            raise NothingPending()
        reason = f"{OPERATOR_CLOSE_PREFIX}: {note.strip() if note and note.strip() else 'no reason given'}"
        return self.commit(
            current,
            Event.REJECT,
            actor,
            TransitionPayload(reason=reason, note=note),
            data={"rejection_reason": reason},
        )

    def reject(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        actor: Actor,
        reason: Optional[str],
    ) -> WorkOrderSnapshot:
        """Outright contractor rejection; a pending proposal is withdrawn with it."""
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required", field="rejection_reason")
        current = self.load_at(work_order_id, expected_version)
        return self.commit(
            current,
            Event.REJECT,
            actor,
            TransitionPayload(reason=reason),
            data={"rejection_reason": reason.strip()},
        )
