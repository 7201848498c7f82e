"""
SQLAlchemy-backed stores.
Each mutating call is its own transaction; compare-and-swap is a single
conditional UPDATE so an interrupted request applies fully or not at all.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AccessToken, WorkOrder, WorkOrderEvent
from ..schemas.tokens import AccessTokenRecord
from ..schemas.work_orders import WorkOrderEventResponse, WorkOrderSnapshot
from ..services.audit import AuditEvent, compute_integrity_hash
from ..services.errors import VersionConflict, WorkOrderNotFound
from .provider import AuditEmitter, TokenStore, WorkOrderStore


def _column_values(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (v.value if isinstance(v, Enum) else v) for k, v in changes.items()}


class SqlTokenStore(TokenStore):
    def __init__(self, db: Session):
        self.db = db

    def issue(self, record: AccessTokenRecord) -> AccessTokenRecord:
        try:
            self.db.execute(
                update(AccessToken)
                .where(
                    AccessToken.work_order_id == record.work_order_id,
                    func.lower(AccessToken.contractor_email) == record.contractor_email.lower(),
                    AccessToken.revoked_at.is_(None),
                )
                .values(revoked_at=record.issued_at)
                .execution_options(synchronize_session=False)
            )
            self.db.add(AccessToken(**record.model_dump()))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return record

    def get_by_hash(self, token_hash: str) -> Optional[AccessTokenRecord]:
        row = self.db.execute(
            select(AccessToken)
            .where(AccessToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return AccessTokenRecord.model_validate(row) if row is not None else None

    def list_for_work_order(self, work_order_id: uuid.UUID, active_only: bool = False) -> List[AccessTokenRecord]:
        query = select(AccessToken).where(AccessToken.work_order_id == work_order_id)
        if active_only:
            query = query.where(AccessToken.revoked_at.is_(None))
        rows = self.db.execute(
            query.order_by(AccessToken.issued_at).execution_options(populate_existing=True)
        ).scalars().all()
        return [AccessTokenRecord.model_validate(r) for r in rows]

    def touch(self, token_id: uuid.UUID, at: datetime) -> None:
        try:
            self.db.execute(
                update(AccessToken)
                .where(AccessToken.id == token_id)
                .values(last_used_at=at)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            # Leave the session usable for the caller's own writes
            self.db.rollback()
            raise

    def revoke(self, token_id: uuid.UUID, at: datetime) -> None:
        try:
            self.db.execute(
                update(AccessToken)
                .where(AccessToken.id == token_id, AccessToken.revoked_at.is_(None))
                .values(revoked_at=at)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise

    def revoke_all(self, work_order_id: uuid.UUID, at: datetime) -> int:
        try:
            result = self.db.execute(
                update(AccessToken)
                .where(AccessToken.work_order_id == work_order_id, AccessToken.revoked_at.is_(None))
                .values(revoked_at=at)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return result.rowcount or 0


class SqlWorkOrderStore(WorkOrderStore):
    def __init__(self, db: Session):
        self.db = db

    def create(self, snapshot: WorkOrderSnapshot) -> WorkOrderSnapshot:
        values = {k: v for k, v in _column_values(snapshot.model_dump()).items() if v is not None}
        self.db.add(WorkOrder(**values))
        try:
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return self.get(snapshot.id)

    def get(self, work_order_id: uuid.UUID) -> Optional[WorkOrderSnapshot]:
        row = self.db.execute(
            select(WorkOrder)
            .where(WorkOrder.id == work_order_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return WorkOrderSnapshot.model_validate(row) if row is not None else None

    def compare_and_swap(
        self,
        work_order_id: uuid.UUID,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> WorkOrderSnapshot:
        values = _column_values(changes)
        values["version"] = expected_version + 1
        try:
            result = self.db.execute(
                update(WorkOrder)
                .where(WorkOrder.id == work_order_id, WorkOrder.version == expected_version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.db.rollback()
                current = self.get(work_order_id)
                if current is None:
                    raise WorkOrderNotFound(work_order_id=work_order_id)
                raise VersionConflict(expected_version, current.version)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return self.get(work_order_id)


class SqlAuditEmitter(AuditEmitter):
    def __init__(self, db: Session, integrity_secret: Optional[str] = None):
        self.db = db
        self.integrity_secret = integrity_secret if integrity_secret is not None else settings.jwt_secret

    def emit(self, event: AuditEvent, attempts: int = 3) -> None:
        integrity_hash = compute_integrity_hash(event, self.integrity_secret)
        for attempt in range(1, attempts + 1):
            seq = self.db.execute(
                select(func.coalesce(func.max(WorkOrderEvent.seq), 0))
                .where(WorkOrderEvent.work_order_id == event.work_order_id)
            ).scalar_one() + 1
            self.db.add(
                WorkOrderEvent(
                    id=event.id,
                    work_order_id=event.work_order_id,
                    event_type=event.event_type,
                    actor_type=event.actor.type,
                    actor_id=event.actor.id,
                    token_id=event.actor.token_id,
                    from_status=event.from_status,
                    to_status=event.to_status,
                    version=event.version,
                    data=event.data or None,
                    timestamp_utc=event.timestamp_utc,
                    integrity_hash=integrity_hash,
                    seq=seq,
                )
            )
            try:
                self.db.commit()
                return
            except IntegrityError:
                # Another writer took the same seq for this work order
                self.db.rollback()
                if attempt == attempts:
                    raise
            except SQLAlchemyError:
                self.db.rollback()
                raise

    def list_events(
        self,
        work_order_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
        event_types: Optional[Sequence[str]] = None,
    ) -> Tuple[List[WorkOrderEventResponse], int]:
        query = select(WorkOrderEvent).where(WorkOrderEvent.work_order_id == work_order_id)
        if event_types:
            query = query.where(WorkOrderEvent.event_type.in_(list(event_types)))
        total = self.db.execute(
            select(func.count()).select_from(query.subquery())
        ).scalar_one()
        rows = self.db.execute(
            query.order_by(WorkOrderEvent.timestamp_utc.desc(), WorkOrderEvent.seq.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return [WorkOrderEventResponse.model_validate(r) for r in rows], total
