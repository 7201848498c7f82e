import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..schemas.tokens import AccessTokenRecord
from ..schemas.work_orders import WorkOrderEventResponse, WorkOrderSnapshot
from ..services.audit import AuditEvent


class TokenStore:
    """Access token rows. Pure data access; validity policy lives in TokenGateway."""

    def issue(self, record: AccessTokenRecord) -> AccessTokenRecord:
        """Revoke the active token for the record's (work order, email) pair and insert ``record``."""
        raise NotImplementedError

    def get_by_hash(self, token_hash: str) -> Optional[AccessTokenRecord]:
        raise NotImplementedError

    def list_for_work_order(self, work_order_id: uuid.UUID, active_only: bool = False) -> List[AccessTokenRecord]:
        raise NotImplementedError

    def touch(self, token_id: uuid.UUID, at: datetime) -> None:
        """Record a successful consume; best-effort."""
        raise NotImplementedError

    def revoke(self, token_id: uuid.UUID, at: datetime) -> None:
        raise NotImplementedError

    def revoke_all(self, work_order_id: uuid.UUID, at: datetime) -> int:
        raise NotImplementedError


class WorkOrderStore:
    """Mutable work order lifecycle fields behind an atomic compare-and-swap."""

    def create(self, snapshot: WorkOrderSnapshot) -> WorkOrderSnapshot:
        raise NotImplementedError

    def get(self, work_order_id: uuid.UUID) -> Optional[WorkOrderSnapshot]:
        raise NotImplementedError

    def compare_and_swap(
        self,
        work_order_id: uuid.UUID,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> WorkOrderSnapshot:
        """
        Apply ``changes`` and bump ``version`` only if the stored version equals
        ``expected_version``. Raises VersionConflict otherwise, WorkOrderNotFound
        when the row is gone. All fields land together or none do.
        """
        raise NotImplementedError


class AuditEmitter:
    def emit(self, event: AuditEvent) -> None:
        raise NotImplementedError

    def list_events(
        self,
        work_order_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
        event_types: Optional[Sequence[str]] = None,
    ) -> Tuple[List[WorkOrderEventResponse], int]:
        """Events newest first plus the unpaginated total."""
        raise NotImplementedError
