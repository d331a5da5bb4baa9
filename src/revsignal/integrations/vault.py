"""Credential Vault -- token encryption at rest and access-token freshness.

CredentialVault wraps the process-wide TokenCipher and the OAuth token
client. ensure_fresh_token() hands a connector a usable plaintext access
token, refreshing it first when expired. Refreshes for the same integration
are serialized with an asyncio.Lock so two concurrent cycles never spend the
same refresh token twice.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from src.revsignal.core.encryption import TokenCipher
from src.revsignal.core.errors import CredentialExpired, TokenExchangeError
from src.revsignal.core.monitoring import token_refreshes_total
from src.revsignal.integrations.oauth import OAuthClient
from src.revsignal.integrations.repository import IntegrationRepository
from src.revsignal.integrations.schemas import IntegrationRead, IntegrationStatus

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialVault:
    """Encrypt, decrypt and refresh provider credentials.

    Args:
        cipher: Process-wide token cipher (constructed once at startup).
        repository: Integration persistence.
        oauth_client: Token endpoint client used for refresh exchanges.
        now: Clock, injectable for tests.
    """

    def __init__(
        self,
        cipher: TokenCipher,
        repository: IntegrationRepository,
        oauth_client: OAuthClient,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cipher = cipher
        self._repository = repository
        self._oauth_client = oauth_client
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def encrypt(self, plaintext: str) -> str:
        return self._cipher.encrypt(plaintext)

    def decrypt(self, ciphertext: str) -> str:
        return self._cipher.decrypt(ciphertext)

    def _is_expired(self, integration: IntegrationRead) -> bool:
        expires_at = integration.token_expires_at
        return expires_at is not None and self._now() >= expires_at

    async def _fail(self, integration: IntegrationRead, detail: str) -> CredentialExpired:
        """Mark the integration errored and build the exception to raise."""
        exc = CredentialExpired(integration.id, integration.provider.display_name, detail)
        await self._repository.set_status(
            integration.id, IntegrationStatus.ERROR, sync_error=str(exc)
        )
        logger.warning(
            "vault.credential_expired",
            integration_id=integration.id,
            tenant_id=integration.tenant_id,
            provider=integration.provider.value,
            detail=detail,
        )
        return exc

    async def ensure_fresh_token(self, integration: IntegrationRead) -> str:
        """Return a plaintext access token valid right now.

        Raises:
            CredentialExpired: The token is expired and cannot be refreshed
                (no refresh token, refresh rejected, or undecryptable). The
                integration has already been marked ``error``.
            ProviderAPIError: The token endpoint was unreachable or failing.
        """
        if not integration.access_token:
            raise await self._fail(integration, "no access token stored")

        if not self._is_expired(integration):
            try:
                return self._cipher.decrypt(integration.access_token)
            except ValueError as exc:
                raise await self._fail(integration, str(exc)) from exc

        key = integration.id
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                # Another coroutine may have refreshed while we waited
                current = await self._repository.get_by_id(key) or integration
                if current.access_token and not self._is_expired(current):
                    return self._cipher.decrypt(current.access_token)
                return await self._refresh(current)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _refresh(self, integration: IntegrationRead) -> str:
        provider = integration.provider
        if not integration.refresh_token:
            raise await self._fail(integration, "token expired and no refresh token available")

        try:
            refresh_token = self._cipher.decrypt(integration.refresh_token)
        except ValueError as exc:
            raise await self._fail(integration, str(exc)) from exc

        try:
            tokens = await self._oauth_client.refresh(provider, refresh_token)
        except TokenExchangeError as exc:
            token_refreshes_total.labels(provider=provider.value, status="rejected").inc()
            raise await self._fail(integration, f"Token refresh failed: {exc}") from exc

        await self._repository.update_tokens(
            integration.id,
            access_token=self._cipher.encrypt(tokens.access_token),
            refresh_token=(
                self._cipher.encrypt(tokens.refresh_token)
                if tokens.refresh_token
                else integration.refresh_token
            ),
            token_expires_at=tokens.expires_at,
        )
        token_refreshes_total.labels(provider=provider.value, status="success").inc()
        logger.info(
            "vault.token_refreshed",
            integration_id=integration.id,
            tenant_id=integration.tenant_id,
            provider=provider.value,
            rotated=bool(tokens.refresh_token) and tokens.refresh_token != refresh_token,
        )
        return tokens.access_token
