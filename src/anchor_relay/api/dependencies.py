"""Shared API dependencies for authentication and common functionality."""

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from anchor_relay.core.security import JWTError, decode_access_token
from anchor_relay.db.session import get_db
from anchor_relay.models import Operator
from anchor_relay.services.chains import ChainGateway, get_chain_gateway
from anchor_relay.services.pipeline import RelayCoordinator, get_relay_coordinator

REQUEST_ID_HEADER = "X-Request-ID"

# Missing credentials are reported as 401 below rather than by the scheme.
bearer_scheme = HTTPBearer(auto_error=False)

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def _credentials_error(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_operator(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    db: SessionDep,
) -> Operator:
    """Get the operator authenticated by the bearer token.

    Args:
        credentials: HTTP Bearer token credentials
        db: Database session

    Returns:
        Operator the token was issued to

    Raises:
        HTTPException: If the token is missing, invalid, or names no operator
    """
    if credentials is None:
        raise _credentials_error("Not authenticated")
    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError as err:
        raise _credentials_error() from err

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise _credentials_error()

    operator = db.get(Operator, subject)
    if operator is None:
        raise _credentials_error("Operator not found")
    return operator


# Type alias for current operator dependency
CurrentOperatorDep = Annotated[Operator, Depends(get_current_operator)]


def require_admin(operator: CurrentOperatorDep) -> Operator:
    """Reject operators without the admin role."""
    if not operator.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return operator


AdminDep = Annotated[Operator, Depends(require_admin)]


@dataclass(frozen=True)
class RequestContext:
    """Who is calling and under which request id. Built once per request."""

    operator: Operator
    request_id: str


def get_request_context(request: Request, operator: AdminDep) -> RequestContext:
    """Build the context of an admin request, honouring a client request id."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
    return RequestContext(operator=operator, request_id=request_id)


AdminContextDep = Annotated[RequestContext, Depends(get_request_context)]


def get_relay_coordinator_dep() -> RelayCoordinator:
    """Return the shared relay coordinator."""
    return get_relay_coordinator()


def get_chain_gateway_dep() -> ChainGateway:
    """Return the shared chain gateway."""
    return get_chain_gateway()


CoordinatorDep = Annotated[RelayCoordinator, Depends(get_relay_coordinator_dep)]
GatewayDep = Annotated[ChainGateway, Depends(get_chain_gateway_dep)]
