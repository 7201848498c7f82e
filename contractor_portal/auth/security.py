from dataclasses import dataclass, field
from typing import List, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..config import settings
from ..services.audit import Actor


http_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Operator:
    """Staff member authenticated by a bearer token from the host application."""
    subject: str
    roles: List[str] = field(default_factory=list)

    def as_actor(self) -> Actor:
        return Actor.operator(self.subject)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_operator(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Operator:
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid subject")
    roles = payload.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    return Operator(subject=str(subject), roles=[str(r) for r in roles])


def require_operator(operator: Operator = Depends(get_current_operator)) -> Operator:
    """Any of the configured operator roles grants access (OR logic)."""
    role_names = {r.lower() for r in operator.roles}
    if not role_names & settings.operator_role_set:
        raise HTTPException(status_code=403, detail="Forbidden")
    return operator
