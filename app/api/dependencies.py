"""Shared API dependencies."""

from fastapi import Depends, HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from app.core.config import settings
from app.services.runtime import Runtime

api_token_header = APIKeyHeader(name=settings.auth_token_header, auto_error=False)
owner_id_header = APIKeyHeader(name=settings.owner_header, auto_error=False)


def verify_api_key(token: str | None = Security(api_token_header)) -> str:
    """Validate static API token if configured."""

    expected = settings.auth_jwt_secret
    if not expected:
        return ""

    if token in {expected, f"Bearer {expected}"}:
        return token or ""

    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API token")


def get_auth_dependency(token: str = Depends(verify_api_key)) -> str:
    """Expose dependency alias for routers."""

    return token


def get_current_owner(owner_id: str | None = Security(owner_id_header)) -> str:
    """Identify the calling user; every job and image read is scoped to them."""

    if not owner_id or not owner_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return owner_id.strip()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime
