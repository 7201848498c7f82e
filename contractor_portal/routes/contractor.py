from fastapi import APIRouter, Depends, Request

from ..config import settings
from ..rate_limit import limiter
from ..schemas.work_orders import (
    LinkRequestResponse,
    PeekResponse,
    ProgressRequest,
    RespondRequest,
    WorkOrderSnapshot,
)
from ..services.contractor_portal import ContractorPortal
from ..services.magic_links import MagicLinkService
from .deps import get_contractor_portal, get_magic_link_service


# No account: the magic link token in the path is the only credential
router = APIRouter(prefix="/contractor", tags=["contractor"])


@router.get("/{token}/{work_order_id}", response_model=PeekResponse)
def view_work_order(
    token: str,
    work_order_id: str,
    portal: ContractorPortal = Depends(get_contractor_portal),
):
    """Current work order for the link holder; a first view marks it as viewed."""
    return portal.view(token, work_order_id)


@router.post("/{token}/{work_order_id}/respond", response_model=WorkOrderSnapshot)
def respond(
    token: str,
    work_order_id: str,
    body: RespondRequest,
    portal: ContractorPortal = Depends(get_contractor_portal),
):
    return portal.respond(token, work_order_id, body)


@router.post("/{token}/{work_order_id}/progress", response_model=WorkOrderSnapshot)
def progress(
    token: str,
    work_order_id: str,
    body: ProgressRequest,
    portal: ContractorPortal = Depends(get_contractor_portal),
):
    return portal.progress(token, work_order_id, body)


@router.post("/{token}/request-link", response_model=LinkRequestResponse)
@limiter.limit(settings.link_request_rate_limit)
def request_new_link(
    request: Request,
    token: str,
    links: MagicLinkService = Depends(get_magic_link_service),
):
    """Renew an expired link. The answer is the same whether or not a link was sent."""
    links.request_new_link(token)
    return LinkRequestResponse()
