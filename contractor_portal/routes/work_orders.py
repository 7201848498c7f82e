from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from ..auth.security import Operator, require_operator
from ..schemas.work_orders import (
    DecideCounterRequest,
    SendWorkOrderResponse,
    VersionedRequest,
    WorkOrderCreate,
    WorkOrderEventList,
    WorkOrderSnapshot,
)
from ..services.magic_links import MagicLinkService, SendResult
from ..services.negotiation import NegotiationEngine
from ..services.state_machine import Event, TransitionPayload
from .deps import get_magic_link_service, get_negotiation_engine


router = APIRouter(prefix="/work-orders", tags=["work-orders"])


def _send_response(result: SendResult) -> SendWorkOrderResponse:
    return SendWorkOrderResponse(
        snapshot=result.work_order,
        url=result.link.url,
        expires_at=result.link.expires_at,
        contractor_email=result.link.record.contractor_email,
        email_sent=result.email_sent,
    )


@router.post("", response_model=WorkOrderSnapshot, status_code=201)
def create_work_order(
    body: WorkOrderCreate,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
    operator: Operator = Depends(require_operator),
):
    return engine.create(body, operator.as_actor())


@router.get("/{work_order_id}", response_model=WorkOrderSnapshot)
def get_work_order(
    work_order_id: str,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
    _=Depends(require_operator),
):
    return engine.load(work_order_id)


@router.post("/{work_order_id}/send", response_model=SendWorkOrderResponse)
def send_work_order(
    work_order_id: str,
    body: VersionedRequest,
    links: MagicLinkService = Depends(get_magic_link_service),
    operator: Operator = Depends(require_operator),
):
    """Send a draft to its contractor and issue the first magic link."""
    result = links.send_work_order(work_order_id, body.expected_version, operator.as_actor())
    return _send_response(result)


@router.post("/{work_order_id}/links/reissue", response_model=SendWorkOrderResponse)
def reissue_link(
    work_order_id: str,
    links: MagicLinkService = Depends(get_magic_link_service),
    operator: Operator = Depends(require_operator),
):
    """Replace the contractor's link; the previous one stops working immediately."""
    return _send_response(links.reissue_link(work_order_id, operator.as_actor()))


@router.post("/{work_order_id}/links/revoke")
def revoke_links(
    work_order_id: str,
    links: MagicLinkService = Depends(get_magic_link_service),
    operator: Operator = Depends(require_operator),
):
    count = links.revoke_links(work_order_id, operator.as_actor())
    return {"revoked": count}


@router.post("/{work_order_id}/counter-offer", response_model=WorkOrderSnapshot)
def decide_counter_offer(
    work_order_id: str,
    body: DecideCounterRequest,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
    operator: Operator = Depends(require_operator),
):
    """Approve, reject, or close the negotiation on the pending proposal."""
    return engine.decide_counter(
        work_order_id, body.expected_version, body.decision, operator.as_actor(), note=body.note
    )


@router.post("/{work_order_id}/inspect", response_model=WorkOrderSnapshot)
def inspect_work_order(
    work_order_id: str,
    body: VersionedRequest,
    engine: NegotiationEngine = Depends(get_negotiation_engine),
    operator: Operator = Depends(require_operator),
):
    return engine.apply(
        work_order_id, body.expected_version, Event.INSPECT, operator.as_actor(), TransitionPayload(note=body.note)
    )


@router.post("/{work_order_id}/close", response_model=WorkOrderSnapshot)
def close_work_order(
    work_order_id: str,
    body: VersionedRequest,
    links: MagicLinkService = Depends(get_magic_link_service),
    operator: Operator = Depends(require_operator),
):
    """Close the order and revoke every outstanding link."""
    return links.close_work_order(work_order_id, body.expected_version, operator.as_actor(), note=body.note)


@router.get("/{work_order_id}/events", response_model=WorkOrderEventList)
def list_events(
    work_order_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    event_type: Optional[List[str]] = Query(None),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
    _=Depends(require_operator),
):
    work_order = engine.load(work_order_id)
    events, total = engine.audit.list_events(work_order.id, limit=limit, offset=offset, event_types=event_type)
    return WorkOrderEventList(events=events, total=total)
