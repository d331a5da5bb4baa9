"""Tenant context propagation via Python contextvars.

The authenticated tenant identity is produced by the auth layer and set by
the API dependency at the start of each request. Logging, metrics, Sentry
tagging and LLM cost metadata read it back via get_current_tenant().
Pipeline components never rely on it for data scoping: repositories take
tenant_id explicitly.
"""

from __future__ import annotations

import contextvars
from dataclasses import dataclass


@dataclass(frozen=True)
class TenantContext:
    """Immutable tenant context for the current request."""

    tenant_id: str
    user_id: str
    role: str


_tenant_context: contextvars.ContextVar[TenantContext] = contextvars.ContextVar("tenant_context")


def get_current_tenant() -> TenantContext:
    """Get the tenant context for the current request.

    Raises RuntimeError if no tenant context has been set (i.e., the call
    is not within a tenant-scoped request).
    """
    try:
        return _tenant_context.get()
    except LookupError:
        raise RuntimeError("No tenant context set -- request is not tenant-scoped")


def set_tenant_context(ctx: TenantContext) -> contextvars.Token[TenantContext]:
    """Set the tenant context for the current request. Returns a token for reset."""
    return _tenant_context.set(ctx)


def reset_tenant_context(token: contextvars.Token[TenantContext]) -> None:
    """Restore the previous tenant context."""
    _tenant_context.reset(token)


def current_tenant_id() -> str | None:
    """Return the current tenant id, or None outside a tenant-scoped request."""
    try:
        return get_current_tenant().tenant_id
    except RuntimeError:
        return None
