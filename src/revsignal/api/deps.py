"""FastAPI dependency injection for authentication and pipeline services.

Authentication is delegated: the auth layer issues a bearer JWT carrying
``sub`` (user id), ``tenant_id`` and ``role``. These dependencies verify it,
expose the resulting TenantContext to endpoints, and fetch the services the
lifespan hook placed on app.state.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Any

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from src.revsignal.config import get_settings
from src.revsignal.core.tenant import (
    TenantContext,
    reset_tenant_context,
    set_tenant_context,
)

ADMIN_ROLE = "admin"


def verify_token(token: str) -> dict:
    """Decode and validate a bearer JWT.

    Raises:
        HTTPException(401): If the token is invalid, expired or lacks claims.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("sub") or not payload.get("tenant_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token missing required claims",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return payload


async def get_tenant(request: Request) -> AsyncGenerator[TenantContext, None]:
    """Authenticate the request and bind its tenant context for the call."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(auth_header[7:])
    ctx = TenantContext(
        tenant_id=str(payload["tenant_id"]),
        user_id=str(payload["sub"]),
        role=str(payload.get("role", "rep")),
    )
    token = set_tenant_context(ctx)
    try:
        yield ctx
    finally:
        reset_tenant_context(token)


async def require_admin(tenant: TenantContext = Depends(get_tenant)) -> TenantContext:
    """Restrict an endpoint to tenant administrators."""
    if tenant.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator role required",
        )
    return tenant


def _from_state(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_integration_service(request: Request) -> Any:
    return _from_state(request, "integration_service", "Integration service")


def get_oauth_service(request: Request) -> Any:
    return _from_state(request, "oauth_service", "OAuth service")


def get_scoring_orchestrator(request: Request) -> Any:
    return _from_state(request, "scoring_orchestrator", "Scoring")
