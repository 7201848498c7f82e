import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    Text,
    Index,
    text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class WorkOrder(Base):
    """Work order sent to an external contractor"""
    __tablename__ = "work_orders"

    id: Mapped[uuid.UUID] = uuid_pk()
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    contractor_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(50), default="draft", nullable=False)  # draft|sent|viewed|accepted|rejected|in_progress|blocked|done|inspected|closed
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Baseline terms (operator)
    estimated_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    requested_start_date: Mapped[Optional[date]] = mapped_column(Date)
    requested_end_date: Mapped[Optional[date]] = mapped_column(Date)
    acceptance_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Negotiation (contractor proposal + operator decision)
    counter_offer_status: Mapped[str] = mapped_column(String(20), default="none", nullable=False)  # none|pending|approved|rejected
    proposed_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    proposed_start_date: Mapped[Optional[date]] = mapped_column(Date)
    proposed_end_date: Mapped[Optional[date]] = mapped_column(Date)
    contractor_notes: Mapped[Optional[str]] = mapped_column(Text)
    counter_offer_responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    counter_offer_response_notes: Mapped[Optional[str]] = mapped_column(Text)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text)

    # Transition timestamps, each set once by the transition reaching that state
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    viewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    inspected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    created_by: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        Index('idx_work_order_status', 'status'),
        Index('idx_work_order_id_version', 'id', 'version'),
    )


class AccessToken(Base):
    """Magic link token; only the SHA-256 of the raw token is stored"""
    __tablename__ = "access_tokens"

    id: Mapped[uuid.UUID] = uuid_pk()
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    work_order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    contractor_email: Mapped[str] = mapped_column(String(255), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    base_expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        Index('idx_access_token_pair', 'work_order_id', 'contractor_email'),
        # At most one active token per recipient of a work order
        Index(
            'uq_access_token_active_pair', 'work_order_id', 'contractor_email', unique=True,
            sqlite_where=text('revoked_at IS NULL'), postgresql_where=text('revoked_at IS NULL'),
        ),
    )


class WorkOrderEvent(Base):
    """Append-only audit trail for work order actions"""
    __tablename__ = "work_order_events"

    id: Mapped[uuid.UUID] = uuid_pk()
    work_order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)  # sent|viewed|accepted|rejected|counter_offer_submitted|...
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False)  # operator|contractor
    actor_id: Mapped[Optional[str]] = mapped_column(String(255))  # operator subject or contractor email
    token_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    from_status: Mapped[Optional[str]] = mapped_column(String(50))
    to_status: Mapped[Optional[str]] = mapped_column(String(50))
    version: Mapped[Optional[int]] = mapped_column(Integer)
    data: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # insertion order within the work order

    __table_args__ = (
        Index('idx_event_work_order_time', 'work_order_id', 'timestamp_utc'),
        UniqueConstraint('work_order_id', 'seq', name='uq_event_work_order_seq'),
    )
