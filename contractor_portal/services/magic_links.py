"""
Magic link lifecycle: issue, send, re-issue, revoke and contractor self-service renewal.

Raw tokens exist only in the returned IssuedLink and the outgoing email;
storage and logs see the SHA-256 hash (or its fingerprint).
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

import structlog

from ..config import Settings, settings as default_settings
from ..logging import token_fingerprint
from ..schemas.tokens import AccessTokenRecord
from ..schemas.work_orders import WorkOrderSnapshot, WorkOrderStatus
from ..storage.provider import TokenStore
from .audit import LINK_ISSUED, LINKS_REVOKED, Actor, AuditEvent
from .errors import IllegalTransition, WorkOrderClosed
from .mailer import LinkMailer, build_link_email
from .state_machine import Event, TransitionPayload, WorkOrderStateMachine
from .time_rules import ensure_utc
from .token_gateway import generate_token, hash_token
from .workflow import WorkOrderWorkflow


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class IssuedLink:
    record: AccessTokenRecord
    raw_token: str
    url: str

    @property
    def expires_at(self) -> datetime:
        return self.record.base_expires_at


@dataclass(frozen=True)
class SendResult:
    work_order: WorkOrderSnapshot
    link: IssuedLink
    email_sent: bool


class MagicLinkService:
    def __init__(
        self,
        tokens: TokenStore,
        workflow: WorkOrderWorkflow,
        mailer: LinkMailer,
        settings: Optional[Settings] = None,
    ):
        self.tokens = tokens
        self.workflow = workflow
        self.mailer = mailer
        self.settings = settings or default_settings

    @property
    def clock(self):
        return self.workflow.clock

    def build_url(self, raw_token: str, work_order_id: uuid.UUID) -> str:
        base = self.settings.public_base_url.rstrip("/")
        return f"{base}/contractor/{raw_token}/{work_order_id}"

    def issue(self, work_order: WorkOrderSnapshot, actor: Actor) -> IssuedLink:
        """Replace the active token of the (work order, contractor email) pair with a fresh one."""
        now = self.clock()
        raw_token = generate_token(self.settings.magic_link_token_bytes)
        record = AccessTokenRecord(
            id=uuid.uuid4(),
            token_hash=hash_token(raw_token),
            work_order_id=work_order.id,
            contractor_email=work_order.contractor_email,
            issued_at=now,
            base_expires_at=ensure_utc(now) + timedelta(hours=self.settings.magic_link_ttl_hours),
            created_by=actor.id,
        )
        self.tokens.issue(record)
        self.workflow.audit.emit(
            AuditEvent(
                work_order_id=work_order.id,
                event_type=LINK_ISSUED,
                actor=actor,
                timestamp_utc=now,
                version=work_order.version,
                data={"token_id": str(record.id), "expires_at": record.base_expires_at.isoformat()},
            )
        )
        logger.info(
            "link_issued",
            work_order_id=str(work_order.id),
            token_id=str(record.id),
            token=token_fingerprint(record.token_hash),
            expires_at=record.base_expires_at.isoformat(),
        )
        return IssuedLink(record=record, raw_token=raw_token, url=self.build_url(raw_token, work_order.id))

    def send_work_order(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        actor: Actor,
    ) -> SendResult:
        """draft → sent, then issue and mail the first link."""
        sent = self.workflow.apply(work_order_id, expected_version, Event.SEND, actor)
        link = self.issue(sent, actor)
        email_sent = self._deliver(sent, link)
        return SendResult(work_order=sent, link=link, email_sent=email_sent)

    def reissue_link(self, work_order_id: Union[str, uuid.UUID], actor: Actor) -> SendResult:
        current = self.workflow.load(work_order_id)
        if WorkOrderStateMachine.blocks_access(current.status):
            raise WorkOrderClosed(status=current.status)
        if current.status == WorkOrderStatus.draft:
            raise IllegalTransition(current.status, "reissue_link", "Send the work order before issuing links")
        link = self.issue(current, actor)
        email_sent = self._deliver(current, link, renewed=True)
        return SendResult(work_order=current, link=link, email_sent=email_sent)

    def revoke_links(self, work_order_id: Union[str, uuid.UUID], actor: Actor) -> int:
        current = self.workflow.load(work_order_id)
        return self._revoke_all(current, actor)

    def close_work_order(
        self,
        work_order_id: Union[str, uuid.UUID],
        expected_version: int,
        actor: Actor,
        note: Optional[str] = None,
    ) -> WorkOrderSnapshot:
        """Close and invalidate every outstanding link of the order."""
        closed = self.workflow.apply(
            work_order_id, expected_version, Event.CLOSE, actor, TransitionPayload(note=note)
        )
        self._revoke_all(closed, actor)
        return closed

    def request_new_link(self, raw_token: str) -> Optional[IssuedLink]:
        """
        Contractor self-service renewal for an expired link.

        Only an expired, never-revoked token of an order that is still open is
        renewed, and the new link goes to the address the old one was bound to.
        Every other case returns None without telling the caller why.
        """
        token_hash = hash_token(raw_token or "")
        fingerprint = token_fingerprint(token_hash)
        record = self.tokens.get_by_hash(token_hash)
        if record is None or record.revoked_at is not None:
            logger.info("link_request_ignored", token=fingerprint, reason="unknown_or_revoked")
            return None
        if ensure_utc(self.clock()) <= record.base_expires_at:
            logger.info("link_request_ignored", token=fingerprint, reason="not_expired")
            return None
        work_order = self.workflow.store.get(record.work_order_id)
        if (
            work_order is None
            or WorkOrderStateMachine.blocks_access(work_order.status)
            or work_order.contractor_email.lower() != record.contractor_email.lower()
        ):
            logger.info("link_request_ignored", token=fingerprint, reason="work_order_unavailable")
            return None
        link = self.issue(work_order, Actor.contractor(record.contractor_email, record.id))
        self._deliver(work_order, link, renewed=True)
        return link

    def _revoke_all(self, work_order: WorkOrderSnapshot, actor: Actor) -> int:
        now = self.clock()
        count = self.tokens.revoke_all(work_order.id, now)
        if count:
            self.workflow.audit.emit(
                AuditEvent(
                    work_order_id=work_order.id,
                    event_type=LINKS_REVOKED,
                    actor=actor,
                    timestamp_utc=now,
                    version=work_order.version,
                    data={"count": count},
                )
            )
        logger.info("links_revoked", work_order_id=str(work_order.id), count=count)
        return count

    def _deliver(self, work_order: WorkOrderSnapshot, link: IssuedLink, renewed: bool = False) -> bool:
        email = build_link_email(work_order, link.url, link.expires_at, self.settings, renewed=renewed)
        sent = self.mailer.send(email)
        if not sent:
            logger.info("link_email_not_sent", work_order_id=str(work_order.id), token_id=str(link.record.id))
        return sent
