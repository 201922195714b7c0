from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import ValidationError

from afyabora.checkout import CheckoutOrchestrator
from afyabora.collaborators import Catalog
from afyabora.config import settings
from afyabora.errors import Unauthorized
from afyabora.gateway import PaymentGatewaySimulator
from afyabora.schemas import Identity

bearer_scheme = HTTPBearer(auto_error=False)


def decode_identity(token: str) -> Identity:
    """Tokens are issued elsewhere; this only checks the signature and reads id and role."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized()
    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise Unauthorized()
    try:
        return Identity(id=user_id, role=payload.get("role"))
    except ValidationError:
        raise Unauthorized("Unknown role")


async def get_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Identity:
    if credentials is None:
        raise Unauthorized()
    return decode_identity(credentials.credentials)


def get_gateway(request: Request) -> PaymentGatewaySimulator:
    return request.app.state.gateway


def get_orchestrator(request: Request) -> CheckoutOrchestrator:
    return request.app.state.orchestrator


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog
