"""
Magic link token gateway.

Resolves a presented raw token into an access decision. Validity depends on
the token row (revocation, TTL ceiling) and on the referenced work order's
lifecycle, checked in that order:

    not_found → revoked → expired → not_found (entity / binding) → work_order_closed

A closed or rejected order answers ``work_order_closed`` even for a revoked
or expired link, since neither renewing nor re-sending can reopen it.

``peek`` is read-only. ``consume`` runs the same checks and then records
``last_used_at``; only a consumed decision may drive a transition.
"""
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

import structlog

from ..config import Settings, settings as default_settings
from ..logging import token_fingerprint
from ..schemas.work_orders import WorkOrderSnapshot
from ..storage.provider import TokenStore, WorkOrderStore
from .errors import TokenExpired, TokenNotFound, TokenRevoked, WorkOrderClosed
from .state_machine import WorkOrderStateMachine
from .time_rules import ensure_utc, is_expiring_soon, utcnow
from .workflow import parse_work_order_id


logger = structlog.get_logger(__name__)


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw token; the only form ever stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_token(nbytes: int = 32) -> str:
    """URL-safe random token with ``nbytes`` of entropy (at least 16)."""
    if nbytes < 16:
        raise ValueError("Magic link tokens need at least 16 random bytes")
    return secrets.token_urlsafe(nbytes)


@dataclass(frozen=True)
class AccessDecision:
    token_id: uuid.UUID
    work_order: WorkOrderSnapshot
    contractor_email: str
    base_expires_at: datetime
    expiring_soon: bool = False
    consumed: bool = False


class TokenGateway:
    def __init__(
        self,
        tokens: TokenStore,
        work_orders: WorkOrderStore,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
    ):
        self.tokens = tokens
        self.work_orders = work_orders
        self.clock = clock
        self.settings = settings or default_settings

    def peek(self, raw_token: str, work_order_id: Union[str, uuid.UUID]) -> AccessDecision:
        """Validate without side effects; safe on every page load."""
        return self._resolve(raw_token, work_order_id, self.clock())

    def consume(self, raw_token: str, work_order_id: Union[str, uuid.UUID]) -> AccessDecision:
        """Validate and mark the token used. The usage write never fails the decision."""
        now = self.clock()
        decision = self._resolve(raw_token, work_order_id, now)
        try:
            self.tokens.touch(decision.token_id, now)
        except Exception as e:
            logger.warning("token_touch_failed", token_id=str(decision.token_id), error=str(e))
        return AccessDecision(
            token_id=decision.token_id,
            work_order=decision.work_order,
            contractor_email=decision.contractor_email,
            base_expires_at=decision.base_expires_at,
            expiring_soon=decision.expiring_soon,
            consumed=True,
        )

    def _resolve(self, raw_token: str, work_order_id: Union[str, uuid.UUID], now: datetime) -> AccessDecision:
        token_hash = hash_token(raw_token or "")
        fingerprint = token_fingerprint(token_hash)

        record = self.tokens.get_by_hash(token_hash)
        if record is None:
            self._deny("not_found", fingerprint)
            raise TokenNotFound()

        # Token confusion guard: the path id must be the token's own work order
        try:
            bound = parse_work_order_id(work_order_id) == record.work_order_id
        except ValueError:
            bound = False
        work_order = self.work_orders.get(record.work_order_id) if bound else None
        closed = work_order is not None and WorkOrderStateMachine.blocks_access(work_order.status)

        # Closing revokes every link; the holder still gets "closed", never "use the latest link"
        if record.revoked_at is not None:
            if closed:
                self._closed(fingerprint, record.id, work_order)
            self._deny("revoked", fingerprint, record.id)
            raise TokenRevoked()
        if ensure_utc(now) > record.base_expires_at:
            if closed:
                self._closed(fingerprint, record.id, work_order)
            self._deny("expired", fingerprint, record.id)
            raise TokenExpired(expired_at=record.base_expires_at.isoformat())

        if not bound:
            self._deny("not_found", fingerprint, record.id, reason="work_order_mismatch")
            raise TokenNotFound()
        if work_order is None:
            self._deny("not_found", fingerprint, record.id, reason="work_order_missing")
            raise TokenNotFound()
        if work_order.contractor_email.lower() != record.contractor_email.lower():
            self._deny("not_found", fingerprint, record.id, reason="recipient_changed")
            raise TokenNotFound()
        if closed:
            self._closed(fingerprint, record.id, work_order)

        return AccessDecision(
            token_id=record.id,
            work_order=work_order,
            contractor_email=record.contractor_email,
            base_expires_at=record.base_expires_at,
            expiring_soon=is_expiring_soon(
                record.base_expires_at, now, self.settings.magic_link_expiring_soon_hours
            ),
        )

    def _closed(self, fingerprint: str, token_id: uuid.UUID, work_order: WorkOrderSnapshot) -> None:
        self._deny("work_order_closed", fingerprint, token_id, status=work_order.status.value)
        raise WorkOrderClosed(status=work_order.status)

    @staticmethod
    def _deny(kind: str, fingerprint: str, token_id: Optional[uuid.UUID] = None, **extra) -> None:
        logger.info(
            "access_denied",
            kind=kind,
            token=fingerprint,
            token_id=str(token_id) if token_id else None,
            **extra,
        )
