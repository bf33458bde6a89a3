from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from sdr_ops.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    organization_id: str
    roles: list[str] = field(default_factory=list)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Authentication required",
        headers={"WWW-Authenticate": "Bearer"},
    )


def read_bearer_claims(request: Request) -> dict[str, Any] | None:
    """Decoded JWT claims of the request, or None when the token is absent or invalid."""
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None

    settings = get_settings()
    try:
        return jwt.decode(token.strip(), settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def claims_organization_id(claims: dict[str, Any]) -> str | None:
    organization_id = claims.get("org_id") or claims.get("organization_id")
    return str(organization_id) if organization_id else None


async def get_current_user(request: Request) -> AuthUser:
    claims = read_bearer_claims(request)
    if claims is None:
        raise _unauthorized()

    subject = claims.get("sub")
    organization_id = claims_organization_id(claims)
    if not subject or not organization_id:
        raise _unauthorized()

    roles = claims.get("roles", [])
    if not isinstance(roles, list):
        roles = []

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = str(subject)
        context.organization_id = organization_id
    return AuthUser(sub=str(subject), organization_id=organization_id, roles=[str(role) for role in roles])
