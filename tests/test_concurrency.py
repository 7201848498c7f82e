"""Concurrency properties against the in-memory stores.

A gated store holds every worker's first read until all workers have read,
so each one starts from the same snapshot and the compare-and-swap decides.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from contractor_portal.schemas.work_orders import (
    ContractorAction,
    Proposal,
    RespondRequest,
    WorkOrderStatus,
)
from contractor_portal.services.audit import Actor
from contractor_portal.services.contractor_portal import ContractorPortal
from contractor_portal.services.errors import AlreadyPending, VersionConflict
from contractor_portal.services.magic_links import MagicLinkService
from contractor_portal.services.negotiation import NegotiationEngine
from contractor_portal.services.state_machine import Event
from contractor_portal.services.token_gateway import TokenGateway
from contractor_portal.storage.memory_provider import InMemoryWorkOrderStore

from conftest import OPERATOR, make_create


WORKERS = 8
CONTRACTOR = Actor(type="contractor", id="crew@example.com")


class _GatedStore(InMemoryWorkOrderStore):
    def __init__(self, parties: int):
        super().__init__()
        self._barrier = threading.Barrier(parties, timeout=10)
        self._seen = set()
        self._seen_lock = threading.Lock()
        self.gated = False

    def get(self, work_order_id):
        snapshot = super().get(work_order_id)
        if self.gated:
            with self._seen_lock:
                first = threading.get_ident() not in self._seen
                self._seen.add(threading.get_ident())
            if first:
                self._barrier.wait()
        return snapshot


def _run_all(fn, count):
    """Run ``fn`` ``count`` times in parallel; returns (results, errors)."""
    results, errors = [], []
    with ThreadPoolExecutor(max_workers=count) as pool:
        futures = [pool.submit(fn) for _ in range(count)]
        for future in futures:
            try:
                results.append(future.result())
            except Exception as e:
                errors.append(e)
    return results, errors


def _wire(parties, tokens, audit, clock, mailer):
    store = _GatedStore(parties)
    engine = NegotiationEngine(store, audit, clock=clock)
    links = MagicLinkService(tokens, engine, mailer)
    portal = ContractorPortal(TokenGateway(tokens, store, clock=clock), engine)
    return store, engine, links, portal


class TestAutoView:
    def test_concurrent_first_views_transition_once(self, tokens, audit, clock, mailer) -> None:
        store, engine, links, portal = _wire(WORKERS, tokens, audit, clock, mailer)
        created = engine.create(make_create(), OPERATOR)
        sent = links.send_work_order(created.id, created.version, OPERATOR)

        store.gated = True
        responses, errors = _run_all(lambda: portal.view(sent.link.raw_token, created.id), WORKERS)
        store.gated = False

        assert errors == []
        assert len(responses) == WORKERS
        assert all(r.access_error is None for r in responses)
        assert all(r.snapshot.status == WorkOrderStatus.viewed for r in responses)
        assert len({r.snapshot.viewed_at for r in responses}) == 1

        final = engine.load(created.id)
        assert final.status == WorkOrderStatus.viewed
        assert final.version == sent.work_order.version + 1
        assert [e.event_type for e in audit.events].count("viewed") == 1

    def test_repeated_views_after_the_first_change_nothing(self, portal, links, engine, audit) -> None:
        created = engine.create(make_create(), OPERATOR)
        sent = links.send_work_order(created.id, created.version, OPERATOR)
        first = portal.view(sent.link.raw_token, created.id)
        events = len(audit.events)
        for _ in range(3):
            again = portal.view(sent.link.raw_token, created.id)
            assert again.snapshot == first.snapshot
        assert len(audit.events) == events


class TestConcurrentWrites:
    def _viewed(self, engine):
        created = engine.create(make_create(), OPERATOR)
        sent = engine.apply(created.id, 1, Event.SEND, OPERATOR)
        return engine.apply(sent.id, sent.version, Event.VIEW, CONTRACTOR)

    def test_two_direct_accepts_one_wins(self, tokens, audit, clock, mailer) -> None:
        store, engine, _, _ = _wire(2, tokens, audit, clock, mailer)
        viewed = self._viewed(engine)

        store.gated = True
        results, errors = _run_all(lambda: engine.direct_accept(viewed.id, viewed.version, CONTRACTOR), 2)
        store.gated = False

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], VersionConflict)
        assert results[0].status == WorkOrderStatus.accepted
        assert [e.event_type for e in audit.events].count("accepted") == 1

    def test_two_portal_accepts_one_wins(self, tokens, audit, clock, mailer) -> None:
        store, engine, links, portal = _wire(2, tokens, audit, clock, mailer)
        created = engine.create(make_create(), OPERATOR)
        sent = links.send_work_order(created.id, 1, OPERATOR)
        viewed = portal.view(sent.link.raw_token, created.id).snapshot

        request = RespondRequest(action=ContractorAction.accept, expected_version=viewed.version)
        store.gated = True
        results, errors = _run_all(lambda: portal.respond(sent.link.raw_token, created.id, request), 2)
        store.gated = False

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], VersionConflict)
        assert engine.load(created.id).version == viewed.version + 1

    def test_double_submitted_counter_offer(self, tokens, audit, clock, mailer) -> None:
        store, engine, _, _ = _wire(2, tokens, audit, clock, mailer)
        viewed = self._viewed(engine)
        proposal = Proposal(proposed_cost=Decimal("4500"))

        store.gated = True
        results, errors = _run_all(
            lambda: engine.propose_counter(viewed.id, viewed.version, proposal, CONTRACTOR), 2
        )
        store.gated = False

        assert len(results) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], (AlreadyPending, VersionConflict))
        assert [e.event_type for e in audit.events].count("counter_offer_submitted") == 1

    @pytest.mark.parametrize("workers", [4])
    def test_many_writers_at_one_version(self, tokens, audit, clock, mailer, workers) -> None:
        store, engine, _, _ = _wire(workers, tokens, audit, clock, mailer)
        viewed = self._viewed(engine)

        store.gated = True
        results, errors = _run_all(lambda: engine.apply(viewed.id, viewed.version, Event.ACCEPT, CONTRACTOR), workers)
        store.gated = False

        assert len(results) == 1
        assert all(isinstance(e, VersionConflict) for e in errors)
        assert engine.load(viewed.id).version == viewed.version + 1
