from fastapi import Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..services.contractor_portal import ContractorPortal
from ..services.magic_links import MagicLinkService
from ..services.mailer import LinkMailer, SmtpLinkMailer
from ..services.negotiation import NegotiationEngine
from ..services.token_gateway import TokenGateway
from ..storage.sql_provider import SqlAuditEmitter, SqlTokenStore, SqlWorkOrderStore


def get_mailer() -> LinkMailer:
    return SmtpLinkMailer()


def get_negotiation_engine(db: Session = Depends(get_db)) -> NegotiationEngine:
    return NegotiationEngine(SqlWorkOrderStore(db), SqlAuditEmitter(db))


def get_token_gateway(db: Session = Depends(get_db)) -> TokenGateway:
    return TokenGateway(SqlTokenStore(db), SqlWorkOrderStore(db))


def get_contractor_portal(
    gateway: TokenGateway = Depends(get_token_gateway),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
) -> ContractorPortal:
    return ContractorPortal(gateway, engine)


def get_magic_link_service(
    db: Session = Depends(get_db),
    engine: NegotiationEngine = Depends(get_negotiation_engine),
    mailer: LinkMailer = Depends(get_mailer),
) -> MagicLinkService:
    return MagicLinkService(SqlTokenStore(db), engine, mailer)
