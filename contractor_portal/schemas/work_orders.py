import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from ..services.time_rules import ensure_utc


class WorkOrderStatus(str, Enum):
    draft = "draft"
    sent = "sent"
    viewed = "viewed"
    accepted = "accepted"
    rejected = "rejected"
    in_progress = "in_progress"
    blocked = "blocked"
    done = "done"
    inspected = "inspected"
    closed = "closed"


class CounterOfferStatus(str, Enum):
    none = "none"
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


_DATETIME_FIELDS = (
    "acceptance_deadline",
    "counter_offer_responded_at",
    "sent_at",
    "viewed_at",
    "accepted_at",
    "rejected_at",
    "started_at",
    "completed_at",
    "inspected_at",
    "closed_at",
    "created_at",
)


class WorkOrderSnapshot(BaseModel):
    """Immutable view of a work order row at one version."""

    id: uuid.UUID
    title: str
    description: Optional[str] = None
    contractor_email: str
    status: WorkOrderStatus = WorkOrderStatus.draft
    version: int = 1

    estimated_cost: Optional[Decimal] = None
    requested_start_date: Optional[date] = None
    requested_end_date: Optional[date] = None
    acceptance_deadline: Optional[datetime] = None

    counter_offer_status: CounterOfferStatus = CounterOfferStatus.none
    proposed_cost: Optional[Decimal] = None
    proposed_start_date: Optional[date] = None
    proposed_end_date: Optional[date] = None
    contractor_notes: Optional[str] = None
    counter_offer_responded_at: Optional[datetime] = None
    counter_offer_response_notes: Optional[str] = None
    rejection_reason: Optional[str] = None

    sent_at: Optional[datetime] = None
    viewed_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    inspected_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    created_at: Optional[datetime] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True

    @field_validator(*_DATETIME_FIELDS)
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    def changes_from(self, before: "WorkOrderSnapshot") -> dict:
        """Fields whose value differs from ``before`` (version excluded)."""
        after = self.model_dump()
        prior = before.model_dump()
        return {k: v for k, v in after.items() if k != "version" and prior.get(k) != v}


class WorkOrderCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    contractor_email: EmailStr
    estimated_cost: Optional[Decimal] = Field(default=None, ge=0)
    requested_start_date: Optional[date] = None
    requested_end_date: Optional[date] = None
    acceptance_deadline: Optional[datetime] = None


class Proposal(BaseModel):
    proposed_cost: Optional[Decimal] = Field(default=None, ge=0)
    proposed_start_date: Optional[date] = None
    proposed_end_date: Optional[date] = None
    contractor_notes: Optional[str] = None


class ContractorAction(str, Enum):
    accept = "accept"
    reject = "reject"
    counter_offer = "counter_offer"


class RespondRequest(BaseModel):
    action: ContractorAction
    expected_version: int
    # For accept/counter_offer
    proposed_cost: Optional[Decimal] = Field(default=None, ge=0)
    proposed_start_date: Optional[date] = None
    proposed_end_date: Optional[date] = None
    contractor_notes: Optional[str] = None
    # For reject
    rejection_reason: Optional[str] = None
    rejection_reason_id: Optional[str] = None

    def proposal(self) -> Proposal:
        return Proposal(
            proposed_cost=self.proposed_cost,
            proposed_start_date=self.proposed_start_date,
            proposed_end_date=self.proposed_end_date,
            contractor_notes=self.contractor_notes,
        )


class ProgressAction(str, Enum):
    start = "start"
    block = "block"
    unblock = "unblock"
    complete = "complete"


class ProgressRequest(BaseModel):
    action: ProgressAction
    expected_version: int
    note: Optional[str] = None


class CounterDecision(str, Enum):
    approved = "approved"
    rejected = "rejected"
    close = "close"


class DecideCounterRequest(BaseModel):
    decision: CounterDecision
    expected_version: int
    note: Optional[str] = None


class VersionedRequest(BaseModel):
    expected_version: int
    note: Optional[str] = None


class AccessErrorKind(str, Enum):
    not_found = "not_found"
    expired = "expired"
    revoked = "revoked"
    work_order_closed = "work_order_closed"


class PeekResponse(BaseModel):
    snapshot: Optional[WorkOrderSnapshot] = None
    contractor_email: Optional[str] = None
    access_error: Optional[AccessErrorKind] = None
    message: Optional[str] = None
    expiring_soon: bool = False
    deadline_status: Optional[str] = None


class SendWorkOrderResponse(BaseModel):
    snapshot: WorkOrderSnapshot
    url: str
    expires_at: datetime
    contractor_email: str
    email_sent: bool


class LinkRequestResponse(BaseModel):
    message: str = "If this link can be renewed, a new one is on its way to the address it was sent to."


class WorkOrderEventResponse(BaseModel):
    id: uuid.UUID
    work_order_id: uuid.UUID
    event_type: str
    actor_type: str
    actor_id: Optional[str] = None
    token_id: Optional[uuid.UUID] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    version: Optional[int] = None
    data: Optional[dict] = None
    timestamp_utc: datetime
    integrity_hash: Optional[str] = None

    class Config:
        from_attributes = True

    @field_validator("timestamp_utc")
    @classmethod
    def _normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class WorkOrderEventList(BaseModel):
    events: List[WorkOrderEventResponse]
    total: int
