"""SQLAlchemy stores against an in-memory SQLite database."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz
from sqlalchemy import create_engine, select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from contractor_portal.db import Base
from contractor_portal.models.models import AccessToken, WorkOrderEvent
from contractor_portal.schemas.tokens import AccessTokenRecord
from contractor_portal.schemas.work_orders import (
    CounterDecision,
    CounterOfferStatus,
    Proposal,
    WorkOrderStatus,
)
from contractor_portal.services.audit import Actor
from contractor_portal.services.errors import VersionConflict, WorkOrderNotFound
from contractor_portal.services.negotiation import NegotiationEngine
from contractor_portal.services.state_machine import Event
from contractor_portal.services.token_gateway import hash_token
from contractor_portal.storage.sql_provider import SqlAuditEmitter, SqlTokenStore, SqlWorkOrderStore

from conftest import OPERATOR, START, FixedClock, make_create


CONTRACTOR = Actor(type="contractor", id="crew@example.com")


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, future=True)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def sql_engine(db) -> NegotiationEngine:
    return NegotiationEngine(SqlWorkOrderStore(db), SqlAuditEmitter(db, integrity_secret="test-secret"), clock=FixedClock())


def _make_record(work_order_id, email="crew@example.com", issued_at=START, raw=None) -> AccessTokenRecord:
    return AccessTokenRecord(
        id=uuid.uuid4(),
        token_hash=hash_token(raw or uuid.uuid4().hex),
        work_order_id=work_order_id,
        contractor_email=email,
        issued_at=issued_at,
        base_expires_at=issued_at + timedelta(hours=72),
    )


class TestSqlWorkOrderStore:
    def test_create_and_read_back(self, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        loaded = sql_engine.load(created.id)
        assert loaded.status == WorkOrderStatus.draft
        assert loaded.version == 1
        assert loaded.estimated_cost == Decimal("5000.00")
        assert loaded.created_by == "op-1"

    def test_datetimes_come_back_as_utc(self, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        sent = sql_engine.apply(created.id, 1, Event.SEND, OPERATOR)
        assert sent.sent_at.tzinfo is not None
        assert sent.sent_at == START

    def test_compare_and_swap_bumps_version(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        store = SqlWorkOrderStore(db)
        updated = store.compare_and_swap(created.id, 1, {"title": "Replace boiler and pump"})
        assert updated.version == 2
        assert updated.title == "Replace boiler and pump"

    def test_stale_write_is_rejected(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        store = SqlWorkOrderStore(db)
        store.compare_and_swap(created.id, 1, {"status": WorkOrderStatus.sent})
        with pytest.raises(VersionConflict) as exc:
            store.compare_and_swap(created.id, 1, {"title": "Lost update"})
        assert exc.value.current_version == 2
        current = store.get(created.id)
        assert current.title == "Replace boiler"
        assert current.status == WorkOrderStatus.sent

    def test_missing_row(self, db) -> None:
        with pytest.raises(WorkOrderNotFound):
            SqlWorkOrderStore(db).compare_and_swap(uuid.uuid4(), 1, {"title": "x"})

    def test_negotiation_round_trip(self, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        sql_engine.apply(created.id, 1, Event.SEND, OPERATOR)
        sql_engine.apply(created.id, 2, Event.VIEW, CONTRACTOR)
        pending = sql_engine.propose_counter(created.id, 3, Proposal(proposed_cost=Decimal("4500")), CONTRACTOR)
        assert pending.counter_offer_status == CounterOfferStatus.pending
        approved = sql_engine.decide_counter(created.id, 4, CounterDecision.approved, OPERATOR)
        assert approved.status == WorkOrderStatus.accepted
        assert approved.estimated_cost == Decimal("4500")
        assert approved.accepted_at == START

    def test_stale_decision_leaves_row_untouched(self, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        sql_engine.apply(created.id, 1, Event.SEND, OPERATOR)
        sql_engine.apply(created.id, 2, Event.VIEW, CONTRACTOR)
        sql_engine.propose_counter(created.id, 3, Proposal(proposed_cost=Decimal("4500")), CONTRACTOR)
        with pytest.raises(VersionConflict):
            sql_engine.decide_counter(created.id, 3, CounterDecision.approved, OPERATOR)
        current = sql_engine.load(created.id)
        assert current.status == WorkOrderStatus.viewed
        assert current.estimated_cost == Decimal("5000.00")
        assert current.counter_offer_status == CounterOfferStatus.pending


class TestSqlTokenStore:
    def test_issue_revokes_previous_for_pair(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        store = SqlTokenStore(db)
        first = store.issue(_make_record(created.id))
        second = store.issue(_make_record(created.id, email="Crew@Example.com", issued_at=START + timedelta(hours=1)))
        active = store.list_for_work_order(created.id, active_only=True)
        assert [r.id for r in active] == [second.id]
        assert store.get_by_hash(first.token_hash).revoked_at == START + timedelta(hours=1)

    def test_one_active_token_per_pair_enforced_by_index(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        for _ in range(2):
            db.add(AccessToken(**_make_record(created.id).model_dump()))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_touch_and_revoke_all(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        store = SqlTokenStore(db)
        record = store.issue(_make_record(created.id))
        store.issue(_make_record(created.id, email="other@example.com"))
        used_at = START + timedelta(minutes=3)
        store.touch(record.id, used_at)
        assert store.get_by_hash(record.token_hash).last_used_at == used_at
        assert store.revoke_all(created.id, used_at) == 2
        assert store.revoke_all(created.id, used_at) == 0

    def test_lookup_by_hash_only(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        store = SqlTokenStore(db)
        store.issue(_make_record(created.id, raw="raw-token-value"))
        assert store.get_by_hash(hash_token("raw-token-value")) is not None
        assert store.get_by_hash("raw-token-value") is None

    @pytest.mark.parametrize("revoke", ["revoke", "revoke_all"])
    def test_failed_revoke_is_rolled_back(self, db, sql_engine, monkeypatch, revoke) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        store = SqlTokenStore(db)
        record = store.issue(_make_record(created.id))

        def failing_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "commit", failing_commit)
        target = record.id if revoke == "revoke" else created.id
        with pytest.raises(OperationalError):
            getattr(store, revoke)(target, START)
        monkeypatch.undo()

        assert store.get_by_hash(record.token_hash).revoked_at is None


class TestSqlAuditEmitter:
    def test_events_listed_newest_first_with_hash(self, db, sql_engine) -> None:
        clock = sql_engine.clock
        created = sql_engine.create(make_create(), OPERATOR)
        clock.advance(minutes=1)
        sql_engine.apply(created.id, 1, Event.SEND, OPERATOR)
        clock.advance(minutes=1)
        sql_engine.apply(created.id, 2, Event.VIEW, CONTRACTOR)

        events, total = sql_engine.audit.list_events(created.id)
        assert total == 3
        assert [e.event_type for e in events] == ["viewed", "sent", "created"]
        assert all(e.integrity_hash and len(e.integrity_hash) == 64 for e in events)
        assert events[0].timestamp_utc == START + timedelta(minutes=2)
        assert events[0].actor_type == "contractor"

    def test_filter_and_paginate(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        sql_engine.apply(created.id, 1, Event.SEND, OPERATOR)
        events, total = sql_engine.audit.list_events(created.id, event_types=["sent"])
        assert total == 1
        assert events[0].to_status == "sent"
        events, total = sql_engine.audit.list_events(created.id, limit=1, offset=1)
        assert total == 2
        assert len(events) == 1

    def test_same_timestamp_keeps_write_order(self, db, sql_engine) -> None:
        created = sql_engine.create(make_create(), OPERATOR)
        sql_engine.apply(created.id, 1, Event.SEND, OPERATOR)
        sql_engine.apply(created.id, 2, Event.VIEW, CONTRACTOR)
        sql_engine.apply(created.id, 3, Event.ACCEPT, CONTRACTOR)

        events, _ = sql_engine.audit.list_events(created.id)
        assert len({e.timestamp_utc for e in events}) == 1
        assert [e.event_type for e in events] == ["accepted", "viewed", "sent", "created"]
        seqs = db.execute(
            select(WorkOrderEvent.seq).where(WorkOrderEvent.work_order_id == created.id).order_by(WorkOrderEvent.seq)
        ).scalars().all()
        assert seqs == [1, 2, 3, 4]
