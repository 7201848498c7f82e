import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ..services.time_rules import ensure_utc


class AccessTokenRecord(BaseModel):
    """Stored magic link token. Holds the hash only, never the raw token."""

    id: uuid.UUID
    token_hash: str
    work_order_id: uuid.UUID
    contractor_email: str
    issued_at: datetime
    base_expires_at: datetime
    revoked_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True
        frozen = True

    @field_validator("issued_at", "base_expires_at", "revoked_at", "last_used_at")
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)
