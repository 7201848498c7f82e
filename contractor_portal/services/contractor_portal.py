"""
Contractor-facing entry points: view, respond and progress through a magic link.

Every state change goes through TokenGateway.consume first; viewing uses peek
and only consumes for the one-time sent → viewed transition.
"""
import uuid
from typing import Callable, Dict, Optional, Union

import structlog

from ..config import Settings, settings as default_settings
from ..schemas.work_orders import (
    AccessErrorKind,
    ContractorAction,
    PeekResponse,
    ProgressAction,
    ProgressRequest,
    RespondRequest,
    WorkOrderSnapshot,
    WorkOrderStatus,
)
from .audit import Actor
from .errors import AccessError, ValidationError, VersionConflict
from .negotiation import NegotiationEngine
from .state_machine import Event, TransitionPayload
from .time_rules import deadline_status
from .token_gateway import AccessDecision, TokenGateway


logger = structlog.get_logger(__name__)


REJECTION_REASONS: Dict[str, str] = {
    "capacity": "No capacity in the requested period",
    "schedule": "Requested dates do not work",
    "scope": "Work is outside our scope",
    "price": "Estimated cost does not cover the work",
    "distance": "Site is too far away",
    "other": "Other",
}

PROGRESS_EVENTS: Dict[ProgressAction, Event] = {
    ProgressAction.start: Event.START,
    ProgressAction.block: Event.BLOCK,
    ProgressAction.unblock: Event.UNBLOCK,
    ProgressAction.complete: Event.COMPLETE,
}


def resolve_rejection_reason(reason_id: Optional[str], text: Optional[str]) -> str:
    """
    Turn a standard reason id and/or free text into the stored rejection reason.

    Known ids expand to their description (free text appended), ``other``
    requires free text, and anything unrecognised is stored as given.
    """
    text = (text or "").strip()
    reason_id = (reason_id or "").strip().lower()
    if not reason_id:
        if not text:
            raise ValidationError("Rejection reason is required", field="rejection_reason")
        return text
    if reason_id == "other":
        if not text:
            raise ValidationError("Please describe the reason", field="rejection_reason")
        return f"Other: {text}"
    description = REJECTION_REASONS.get(reason_id)
    if description is None:
        return text or reason_id
    return f"{description}: {text}" if text else description


class ContractorPortal:
    def __init__(
        self,
        gateway: TokenGateway,
        engine: NegotiationEngine,
        settings: Optional[Settings] = None,
    ):
        self.gateway = gateway
        self.engine = engine
        self.settings = settings or default_settings

    def view(self, raw_token: str, work_order_id: Union[str, uuid.UUID]) -> PeekResponse:
        """Read the work order; access failures come back as ``access_error``."""
        try:
            decision = self.gateway.peek(raw_token, work_order_id)
            snapshot = decision.work_order
            if snapshot.status == WorkOrderStatus.sent:
                snapshot = self._mark_viewed(raw_token, work_order_id)
        except AccessError as e:
            return PeekResponse(access_error=AccessErrorKind(e.kind), message=e.message)

        return PeekResponse(
            snapshot=snapshot,
            contractor_email=decision.contractor_email,
            expiring_soon=decision.expiring_soon,
            deadline_status=deadline_status(snapshot.acceptance_deadline, self.engine.clock()),
        )

    def _mark_viewed(self, raw_token: str, work_order_id: Union[str, uuid.UUID]) -> WorkOrderSnapshot:
        decision = self.gateway.consume(raw_token, work_order_id)
        current = decision.work_order
        if current.status != WorkOrderStatus.sent:
            return current
        try:
            viewed = self.engine.commit(current, Event.VIEW, self._actor(decision))
        except VersionConflict:
            # Another first view won the write; its result is ours too
            latest = self.engine.load(current.id)
            logger.info("auto_view_lost", work_order_id=str(current.id), status=latest.status.value)
            return latest
        logger.info("auto_view_won", work_order_id=str(viewed.id), token_id=str(decision.token_id))
        return viewed

    def respond(
        self,
        raw_token: str,
        work_order_id: Union[str, uuid.UUID],
        request: RespondRequest,
    ) -> WorkOrderSnapshot:
        decision = self.gateway.consume(raw_token, work_order_id)
        actor = self._actor(decision)
        wo_id = decision.work_order.id

        if request.action == ContractorAction.accept:
            def operation(version: int) -> WorkOrderSnapshot:
                return self.engine.direct_accept(
                    wo_id,
                    version,
                    actor,
                    cost=request.proposed_cost,
                    start_date=request.proposed_start_date,
                    end_date=request.proposed_end_date,
                    notes=request.contractor_notes,
                )
        elif request.action == ContractorAction.reject:
            reason = resolve_rejection_reason(request.rejection_reason_id, request.rejection_reason)

            def operation(version: int) -> WorkOrderSnapshot:
                return self.engine.reject(wo_id, version, actor, reason)
        else:
            proposal = request.proposal()

            def operation(version: int) -> WorkOrderSnapshot:
                return self.engine.propose_counter(wo_id, version, proposal, actor)

        return self._run(wo_id, request.expected_version, operation)

    def progress(
        self,
        raw_token: str,
        work_order_id: Union[str, uuid.UUID],
        request: ProgressRequest,
    ) -> WorkOrderSnapshot:
        decision = self.gateway.consume(raw_token, work_order_id)
        actor = self._actor(decision)
        event = PROGRESS_EVENTS[request.action]
        payload = TransitionPayload(note=request.note)

        def operation(version: int) -> WorkOrderSnapshot:
            return self.engine.apply(decision.work_order.id, version, event, actor, payload)

        return self._run(decision.work_order.id, request.expected_version, operation)

    def _run(
        self,
        work_order_id: uuid.UUID,
        expected_version: int,
        operation: Callable[[int], WorkOrderSnapshot],
    ) -> WorkOrderSnapshot:
        return self.engine.with_retry(
            work_order_id, expected_version, operation, retries=self.settings.version_conflict_retries
        )

    @staticmethod
    def _actor(decision: AccessDecision) -> Actor:
        return Actor.contractor(decision.contractor_email, decision.token_id)
