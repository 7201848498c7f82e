"""Tests for TokenGateway: peek/consume, validation order and status-aware expiry."""

import uuid
from datetime import timedelta

import pytest

from contractor_portal.schemas.tokens import AccessTokenRecord
from contractor_portal.schemas.work_orders import WorkOrderStatus
from contractor_portal.services.errors import (
    TokenExpired,
    TokenNotFound,
    TokenRevoked,
    WorkOrderClosed,
)
from contractor_portal.services.token_gateway import TokenGateway, generate_token, hash_token
from contractor_portal.storage.memory_provider import InMemoryTokenStore

from conftest import OPERATOR, make_create


def _seed(engine, tokens, clock, status=WorkOrderStatus.viewed, ttl_hours=72, email="crew@example.com"):
    """Store a work order in ``status`` and an active token for it."""
    snapshot = engine.create(make_create(contractor_email=email), OPERATOR)
    if status != WorkOrderStatus.draft:
        snapshot = engine.store.compare_and_swap(snapshot.id, snapshot.version, {"status": status})
    raw = generate_token(32)
    record = AccessTokenRecord(
        id=uuid.uuid4(),
        token_hash=hash_token(raw),
        work_order_id=snapshot.id,
        contractor_email=email,
        issued_at=clock(),
        base_expires_at=clock() + timedelta(hours=ttl_hours),
    )
    tokens.issue(record)
    return raw, snapshot, record


class TestTokenHelpers:
    def test_hash_is_sha256_hex(self) -> None:
        digest = hash_token("abc")
        assert len(digest) == 64
        assert digest == hash_token("abc")
        assert digest != hash_token("abd")

    def test_generated_tokens_are_unique_and_long(self) -> None:
        values = {generate_token(16) for _ in range(50)}
        assert len(values) == 50
        assert all(len(v) >= 22 for v in values)

    def test_short_tokens_refused(self) -> None:
        with pytest.raises(ValueError):
            generate_token(8)


class TestPeek:
    def test_valid_token(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, record = _seed(engine, tokens, clock)
        decision = gateway.peek(raw, str(snapshot.id))
        assert decision.token_id == record.id
        assert decision.work_order.id == snapshot.id
        assert decision.contractor_email == "crew@example.com"
        assert not decision.consumed
        assert not decision.expiring_soon

    def test_peek_has_no_side_effects(self, engine, tokens, work_orders, gateway, clock) -> None:
        raw, snapshot, record = _seed(engine, tokens, clock)
        before_token = tokens.get_by_hash(record.token_hash)
        before_order = work_orders.get(snapshot.id)
        for _ in range(5):
            gateway.peek(raw, snapshot.id)
        assert tokens.get_by_hash(record.token_hash) == before_token
        assert work_orders.get(snapshot.id) == before_order
        assert tokens.touch_calls == 0

    def test_unknown_token(self, engine, tokens, gateway, clock) -> None:
        _, snapshot, _ = _seed(engine, tokens, clock)
        with pytest.raises(TokenNotFound):
            gateway.peek("not-a-token", snapshot.id)

    def test_revoked_token(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, record = _seed(engine, tokens, clock)
        tokens.revoke(record.id, clock())
        with pytest.raises(TokenRevoked):
            gateway.peek(raw, snapshot.id)

    def test_reissue_revokes_previous_token(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock)
        new_raw = generate_token(32)
        tokens.issue(
            AccessTokenRecord(
                id=uuid.uuid4(),
                token_hash=hash_token(new_raw),
                work_order_id=snapshot.id,
                contractor_email="CREW@example.com",
                issued_at=clock(),
                base_expires_at=clock() + timedelta(hours=72),
            )
        )
        with pytest.raises(TokenRevoked):
            gateway.peek(raw, snapshot.id)
        assert gateway.peek(new_raw, snapshot.id).work_order.id == snapshot.id
        assert len(tokens.list_for_work_order(snapshot.id, active_only=True)) == 1

    def test_expired_token(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, ttl_hours=72)
        clock.advance(hours=72, seconds=1)
        with pytest.raises(TokenExpired):
            gateway.peek(raw, snapshot.id)

    def test_valid_until_the_ceiling(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, ttl_hours=72)
        clock.advance(hours=72)
        assert gateway.peek(raw, snapshot.id).expiring_soon is False

    def test_revoked_wins_over_expired(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, record = _seed(engine, tokens, clock, ttl_hours=1)
        tokens.revoke(record.id, clock())
        clock.advance(hours=2)
        with pytest.raises(TokenRevoked):
            gateway.peek(raw, snapshot.id)

    def test_token_bound_to_other_work_order(self, engine, tokens, gateway, clock) -> None:
        raw, _, _ = _seed(engine, tokens, clock)
        _, other, _ = _seed(engine, tokens, clock, email="other@example.com")
        with pytest.raises(TokenNotFound):
            gateway.peek(raw, other.id)
        with pytest.raises(TokenNotFound):
            gateway.peek(raw, "not-a-uuid")

    @pytest.mark.parametrize("spelling", [str.upper, lambda s: s.replace("-", "")])
    def test_work_order_id_spelling_does_not_matter(self, engine, tokens, gateway, clock, spelling) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock)
        decision = gateway.peek(raw, spelling(str(snapshot.id)))
        assert decision.work_order.id == snapshot.id

    def test_recipient_changed(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock)
        engine.store.compare_and_swap(snapshot.id, snapshot.version, {"contractor_email": "new@example.com"})
        with pytest.raises(TokenNotFound):
            gateway.peek(raw, snapshot.id)

    def test_expiring_soon(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, ttl_hours=72)
        clock.advance(hours=50)
        assert gateway.peek(raw, snapshot.id).expiring_soon is True


class TestStatusAwareExpiry:
    def test_closed_order_with_future_ceiling(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, status=WorkOrderStatus.closed)
        with pytest.raises(WorkOrderClosed) as exc:
            gateway.peek(raw, snapshot.id)
        assert exc.value.kind == "work_order_closed"
        assert exc.value.hint == "contact_operator"

    def test_rejected_order(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, status=WorkOrderStatus.rejected)
        with pytest.raises(WorkOrderClosed):
            gateway.peek(raw, snapshot.id)

    def test_closed_order_wins_over_revocation(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, status=WorkOrderStatus.closed)
        tokens.revoke_all(snapshot.id, clock())
        with pytest.raises(WorkOrderClosed):
            gateway.peek(raw, snapshot.id)

    def test_closed_order_wins_over_expiry(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, status=WorkOrderStatus.rejected, ttl_hours=1)
        clock.advance(hours=5)
        with pytest.raises(WorkOrderClosed):
            gateway.peek(raw, snapshot.id)

    def test_done_order_still_open(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, status=WorkOrderStatus.done)
        assert gateway.peek(raw, snapshot.id).work_order.status == WorkOrderStatus.done


class TestConsume:
    def test_consume_records_usage(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, record = _seed(engine, tokens, clock)
        clock.advance(minutes=5)
        decision = gateway.consume(raw, snapshot.id)
        assert decision.consumed
        assert tokens.get_by_hash(record.token_hash).last_used_at == clock()
        assert tokens.touch_calls == 1

    def test_consume_validates_like_peek(self, engine, tokens, gateway, clock) -> None:
        raw, snapshot, _ = _seed(engine, tokens, clock, status=WorkOrderStatus.closed)
        with pytest.raises(WorkOrderClosed):
            gateway.consume(raw, snapshot.id)
        assert tokens.touch_calls == 0

    def test_usage_write_failure_does_not_deny_access(self, engine, work_orders, clock) -> None:
        class _BrokenTouch(InMemoryTokenStore):
            def touch(self, token_id, at):
                raise RuntimeError("token table locked")

        tokens = _BrokenTouch()
        raw, snapshot, _ = _seed(engine, tokens, clock)
        gateway = TokenGateway(tokens, work_orders, clock=clock)
        decision = gateway.consume(raw, snapshot.id)
        assert decision.work_order.id == snapshot.id
