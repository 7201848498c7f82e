"""
Work order workflow service.
Loads a snapshot, runs the state machine, persists with compare-and-swap
and emits one audit event per applied transition.
"""
import uuid
from typing import Any, Callable, Dict, Optional, Union

import structlog

from ..schemas.work_orders import WorkOrderCreate, WorkOrderSnapshot
from ..storage.provider import AuditEmitter, WorkOrderStore
from .audit import CREATED, EVENT_TYPES, Actor, AuditEvent, compute_diff, to_json_safe
from .errors import PortalError, ValidationError, VersionConflict, WorkOrderNotFound
from .state_machine import Event, TransitionPayload, WorkOrderStateMachine
from .time_rules import utcnow


logger = structlog.get_logger(__name__)


def parse_work_order_id(value: Union[str, uuid.UUID]) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


class WorkOrderWorkflow:
    def __init__(
        self,
        store: WorkOrderStore,
        audit: AuditEmitter,
        clock: Callable = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock

    def create(self, data: WorkOrderCreate, actor: Actor) -> WorkOrderSnapshot:
        """Store a new draft; baseline terms are editable only until it is sent."""
        if (
            data.requested_start_date is not None
            and data.requested_end_date is not None
            and data.requested_end_date < data.requested_start_date
        ):
            raise ValidationError("End date cannot be before start date", field="requested_end_date")
        now = self.clock()
        snapshot = WorkOrderSnapshot(
            id=uuid.uuid4(),
            title=data.title,
            description=data.description,
            contractor_email=str(data.contractor_email),
            estimated_cost=data.estimated_cost,
            requested_start_date=data.requested_start_date,
            requested_end_date=data.requested_end_date,
            acceptance_deadline=data.acceptance_deadline,
            created_at=now,
            created_by=actor.id,
        )
        saved = self.store.create(snapshot)
        self.audit.emit(
            AuditEvent(
                work_order_id=saved.id,
                event_type=CREATED,
                actor=actor,
                timestamp_utc=now,
                to_status=saved.status.value,
                version=saved.version,
                data=to_json_safe({"title": saved.title, "contractor_email": saved.contractor_email}),
            )
        )
        logger.info("work_order_created", work_order_id=str(saved.id), actor_id=actor.id)
        return saved

    def load(self, work_order_id: Union[str, uuid.UUID]) -> WorkOrderSnapshot:
        try:
            wo_id = parse_work_order_id(work_order_id)
        except ValueError:
            raise WorkOrderNotFound(work_order_id=str(work_order_id))
        snapshot = self.store.get(wo_id)
        if snapshot is None:
            raise WorkOrderNotFound(work_order_id=wo_id)
        return snapshot

    def load_at(self, work_order_id: Union[str, uuid.UUID], expected_version: int) -> WorkOrderSnapshot:
        """Load and fail fast when the caller's view is already stale."""
        current = self.load(work_order_id)
        if current.version != expected_version:
            raise VersionConflict(expected_version, current.version)
        return current

    def apply(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        event: Event,
        actor: Actor,
        payload: Optional[TransitionPayload] = None,
    ) -> WorkOrderSnapshot:
        current = self.load_at(work_order_id, expected_version)
        return self.commit(current, event, actor, payload)

    def with_retry(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        operation: Callable[[int], WorkOrderSnapshot],
        retries: int = 1,
    ) -> WorkOrderSnapshot:
        """
        Run ``operation(version)``; on VersionConflict re-read and run it again
        at the fresh version, up to ``retries`` times.

        A retry that fails for another reason means the order moved on in a way
        the caller has not seen, so the original conflict is what surfaces.
        """
        try:
            return operation(expected_version)
        except VersionConflict as conflict:
            original = conflict
        last = original
        for attempt in range(retries):
            fresh = self.load(work_order_id)
            logger.info(
                "version_conflict_retry",
                work_order_id=str(fresh.id),
                expected_version=last.expected_version,
                current_version=fresh.version,
                attempt=attempt + 1,
            )
            try:
                return operation(fresh.version)
            except VersionConflict as conflict:
                last = conflict
            except PortalError:
                raise original
        raise last

    def commit(
        self,
        current: WorkOrderSnapshot,
        event: Event,
        actor: Actor,
        payload: Optional[TransitionPayload] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> WorkOrderSnapshot:
        """Compute the next snapshot from ``current`` and write it at ``current.version``."""
        now = self.clock()
        proposed = WorkOrderStateMachine.apply(current, event, now, payload)
        changes = proposed.changes_from(current)
        saved = self.store.compare_and_swap(current.id, current.version, changes)

        event_data = {"changes": compute_diff(
            {k: getattr(current, k) for k in changes},
            {k: getattr(saved, k) for k in changes},
        )}
        if data:
            event_data.update(data)
        self.audit.emit(
            AuditEvent(
                work_order_id=saved.id,
                event_type=EVENT_TYPES[Event(event)],
                actor=actor,
                timestamp_utc=now,
                from_status=current.status.value,
                to_status=saved.status.value,
                version=saved.version,
                data=to_json_safe(event_data),
            )
        )
        logger.info(
            "work_order_transition",
            work_order_id=str(saved.id),
            transition=Event(event).value,
            from_status=current.status.value,
            to_status=saved.status.value,
            version=saved.version,
            actor_type=actor.type,
        )
        return saved
