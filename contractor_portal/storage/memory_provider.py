"""
In-memory stores for tests and local demos.
A single lock per store stands in for the database's row atomicity.
"""
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..schemas.tokens import AccessTokenRecord
from ..schemas.work_orders import WorkOrderEventResponse, WorkOrderSnapshot
from ..services.audit import AuditEvent, compute_integrity_hash
from ..services.errors import VersionConflict, WorkOrderNotFound
from .provider import AuditEmitter, TokenStore, WorkOrderStore


class InMemoryTokenStore(TokenStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[uuid.UUID, AccessTokenRecord] = {}
        self.touch_calls = 0

    def issue(self, record: AccessTokenRecord) -> AccessTokenRecord:
        with self._lock:
            pair = (record.work_order_id, record.contractor_email.lower())
            for row in list(self._rows.values()):
                if row.revoked_at is None and (row.work_order_id, row.contractor_email.lower()) == pair:
                    self._rows[row.id] = row.model_copy(update={"revoked_at": record.issued_at})
            self._rows[record.id] = record
            return record

    def get_by_hash(self, token_hash: str) -> Optional[AccessTokenRecord]:
        with self._lock:
            for row in self._rows.values():
                if row.token_hash == token_hash:
                    return row
        return None

    def list_for_work_order(self, work_order_id: uuid.UUID, active_only: bool = False) -> List[AccessTokenRecord]:
        with self._lock:
            rows = [r for r in self._rows.values() if r.work_order_id == work_order_id]
        if active_only:
            rows = [r for r in rows if r.revoked_at is None]
        return sorted(rows, key=lambda r: r.issued_at)

    def touch(self, token_id: uuid.UUID, at: datetime) -> None:
        with self._lock:
            self.touch_calls += 1
            row = self._rows.get(token_id)
            if row is not None:
                self._rows[token_id] = row.model_copy(update={"last_used_at": at})

    def revoke(self, token_id: uuid.UUID, at: datetime) -> None:
        with self._lock:
            row = self._rows.get(token_id)
            if row is not None and row.revoked_at is None:
                self._rows[token_id] = row.model_copy(update={"revoked_at": at})

    def revoke_all(self, work_order_id: uuid.UUID, at: datetime) -> int:
        count = 0
        with self._lock:
            for row in list(self._rows.values()):
                if row.work_order_id == work_order_id and row.revoked_at is None:
                    self._rows[row.id] = row.model_copy(update={"revoked_at": at})
                    count += 1
        return count


class InMemoryWorkOrderStore(WorkOrderStore):
    def __init__(self):
        self._lock = threading.Lock()
        self._rows: Dict[uuid.UUID, WorkOrderSnapshot] = {}
        self.write_count = 0

    def create(self, snapshot: WorkOrderSnapshot) -> WorkOrderSnapshot:
        with self._lock:
            self._rows[snapshot.id] = snapshot
            return snapshot

    def get(self, work_order_id: uuid.UUID) -> Optional[WorkOrderSnapshot]:
        with self._lock:
            return self._rows.get(work_order_id)

    def compare_and_swap(
        self,
        work_order_id: uuid.UUID,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> WorkOrderSnapshot:
        with self._lock:
            current = self._rows.get(work_order_id)
            if current is None:
                raise WorkOrderNotFound(work_order_id=work_order_id)
            if current.version != expected_version:
                raise VersionConflict(expected_version, current.version)
            updated = current.model_copy(update={**changes, "version": expected_version + 1})
            self._rows[work_order_id] = updated
            self.write_count += 1
            return updated


class InMemoryAuditEmitter(AuditEmitter):
    def __init__(self, integrity_secret: Optional[str] = None):
        self._lock = threading.Lock()
        self.integrity_secret = integrity_secret
        self.events: List[AuditEvent] = []
        self._hashes: Dict[uuid.UUID, Optional[str]] = {}

    def emit(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)
            self._hashes[event.id] = compute_integrity_hash(event, self.integrity_secret)

    def list_events(
        self,
        work_order_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
        event_types: Optional[Sequence[str]] = None,
    ) -> Tuple[List[WorkOrderEventResponse], int]:
        with self._lock:
            matching = [e for e in self.events if e.work_order_id == work_order_id]
        if event_types:
            matching = [e for e in matching if e.event_type in set(event_types)]
        # Stable newest-first: later emits win ties on timestamp
        ordered = [e for _, e in sorted(enumerate(matching), key=lambda p: (p[1].timestamp_utc, p[0]), reverse=True)]
        page = ordered[offset:offset + limit]
        return [
            WorkOrderEventResponse(
                id=e.id,
                work_order_id=e.work_order_id,
                event_type=e.event_type,
                actor_type=e.actor.type,
                actor_id=e.actor.id,
                token_id=e.actor.token_id,
                from_status=e.from_status,
                to_status=e.to_status,
                version=e.version,
                data=e.data or None,
                timestamp_utc=e.timestamp_utc,
                integrity_hash=self._hashes.get(e.id),
            )
            for e in page
        ], len(matching)
