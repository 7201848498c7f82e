"""Shared fixtures: a fixed clock and in-memory stores wired into the services."""

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest
import pytz

from contractor_portal.schemas.work_orders import WorkOrderCreate
from contractor_portal.services.audit import Actor
from contractor_portal.services.contractor_portal import ContractorPortal
from contractor_portal.services.magic_links import MagicLinkService
from contractor_portal.services.mailer import OutboxMailer
from contractor_portal.services.negotiation import NegotiationEngine
from contractor_portal.services.token_gateway import TokenGateway
from contractor_portal.storage.memory_provider import (
    InMemoryAuditEmitter,
    InMemoryTokenStore,
    InMemoryWorkOrderStore,
)


START = datetime(2026, 3, 2, 9, 0, 0, tzinfo=pytz.UTC)
OPERATOR = Actor.operator("op-1")


class FixedClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_create(**overrides) -> WorkOrderCreate:
    data = dict(
        title="Replace boiler",
        description="Basement boiler, 2 units",
        contractor_email="crew@example.com",
        estimated_cost=Decimal("5000.00"),
        requested_start_date=date(2026, 3, 10),
        requested_end_date=date(2026, 3, 14),
    )
    data.update(overrides)
    return WorkOrderCreate(**data)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def tokens() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture
def work_orders() -> InMemoryWorkOrderStore:
    return InMemoryWorkOrderStore()


@pytest.fixture
def audit() -> InMemoryAuditEmitter:
    return InMemoryAuditEmitter(integrity_secret="test-secret")


@pytest.fixture
def engine(work_orders, audit, clock) -> NegotiationEngine:
    return NegotiationEngine(work_orders, audit, clock=clock)


@pytest.fixture
def gateway(tokens, work_orders, clock) -> TokenGateway:
    return TokenGateway(tokens, work_orders, clock=clock)


@pytest.fixture
def mailer() -> OutboxMailer:
    return OutboxMailer()


@pytest.fixture
def links(tokens, engine, mailer) -> MagicLinkService:
    return MagicLinkService(tokens, engine, mailer)


@pytest.fixture
def portal(gateway, engine) -> ContractorPortal:
    return ContractorPortal(gateway, engine)
