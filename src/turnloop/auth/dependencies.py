"""FastAPI dependencies for session auth."""

from dataclasses import dataclass

from fastapi import Header, HTTPException, status

from turnloop.auth.service import validate_token
from turnloop.db.connection import get_conn
from turnloop.errors import ErrorCode, build_error_payload
from turnloop.providers.credentials import Principal


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None
    return token.strip()


@dataclass(frozen=True, slots=True)
class UserContext:
    user_id: str
    role: str
    tenant_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def principal(self) -> Principal:
        return Principal(user_id=self.user_id, tenant_id=self.tenant_id)


def require_auth(authorization: str | None = Header(default=None)) -> UserContext:
    raw_token = _extract_bearer(authorization)
    if not raw_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=build_error_payload(ErrorCode.AUTH_MISSING),
        )
    with get_conn() as conn:
        identity = validate_token(conn, raw_token)
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=build_error_payload(ErrorCode.AUTH_INVALID),
        )
    return UserContext(user_id=identity.user_id, role=identity.role, tenant_id=identity.tenant_id)
