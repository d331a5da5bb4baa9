"""OAuth 2.0 authorization-code flow for CRM providers.

Provides:
- OAuthProviderConfig / get_provider_config(): per-provider endpoints,
  scopes and client credentials
- OAuthClient: authorization-code and refresh-token exchanges over httpx
- OAuthStateStore: single-use CSRF state records in Redis
- OAuthService: begin/complete authorization and disconnect for a tenant

Token exchanges are never retried: a rejected refresh token needs the tenant
to re-authorize, and repeating the call cannot fix that.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

import httpx
import redis.asyncio as aioredis
import structlog

from src.revsignal.config import Settings
from src.revsignal.core.encryption import TokenCipher
from src.revsignal.core.errors import (
    IntegrationNotFound,
    OAuthStateError,
    ProviderAPIError,
    TokenExchangeError,
)
from src.revsignal.integrations.repository import IntegrationRepository
from src.revsignal.integrations.schemas import Provider, TokenSet

logger = structlog.get_logger(__name__)

HUBSPOT_SCOPES = (
    "crm.objects.deals.read",
    "crm.objects.deals.write",
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.objects.companies.read",
    "crm.objects.companies.write",
    "crm.objects.owners.read",
)
SALESFORCE_SCOPES = ("api", "refresh_token", "offline_access")


# ── Provider Registry ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class OAuthProviderConfig:
    """Static OAuth application settings for one provider."""

    provider: Provider
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    client_id: str
    client_secret: str
    redirect_uri: str

    def authorize_redirect(self, state: str) -> str:
        """Provider authorize URL carrying the CSRF state and requested scopes."""
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "state": state,
            "scope": " ".join(self.scopes),
        }
        return f"{self.authorize_url}?{urlencode(params)}"


def get_provider_config(provider: Provider, settings: Settings) -> OAuthProviderConfig:
    """Build the OAuth config for a provider from settings."""
    redirect_uri = settings.oauth_redirect_uri(provider.value)
    if provider == Provider.SALESFORCE:
        login_url = settings.SALESFORCE_LOGIN_URL.rstrip("/")
        return OAuthProviderConfig(
            provider=provider,
            authorize_url=f"{login_url}/services/oauth2/authorize",
            token_url=f"{login_url}/services/oauth2/token",
            scopes=SALESFORCE_SCOPES,
            client_id=settings.SALESFORCE_CLIENT_ID,
            client_secret=settings.SALESFORCE_CLIENT_SECRET,
            redirect_uri=redirect_uri,
        )
    return OAuthProviderConfig(
        provider=provider,
        authorize_url="https://app.hubspot.com/oauth/authorize",
        token_url="https://api.hubapi.com/oauth/v1/token",
        scopes=HUBSPOT_SCOPES,
        client_id=settings.HUBSPOT_CLIENT_ID,
        client_secret=settings.HUBSPOT_CLIENT_SECRET,
        redirect_uri=redirect_uri,
    )


# ── Token Endpoint Client ───────────────────────────────────────────────────


def _parse_token_response(data: dict, fallback_refresh: str | None = None) -> TokenSet:
    """Normalize a token endpoint payload. expires_in is in seconds."""
    expires_in = data.get("expires_in")
    expires_at = (
        datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
        if expires_in
        else None
    )
    return TokenSet(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or fallback_refresh,
        expires_at=expires_at,
        instance_url=data.get("instance_url"),
    )


class OAuthClient:
    """Form-encoded POSTs against provider token endpoints.

    Args:
        settings: Application settings (client credentials, timeout).
        transport: Optional httpx transport (tests inject a MockTransport).
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.PROVIDER_HTTP_TIMEOUT,
            transport=self._transport,
        )

    async def _post_token(self, config: OAuthProviderConfig, form: dict[str, str]) -> dict:
        try:
            async with self._client() as client:
                response = await client.post(
                    config.token_url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as exc:
            raise ProviderAPIError(
                config.provider.display_name, f"token endpoint unreachable: {exc}"
            ) from exc

        if response.status_code >= 500:
            raise ProviderAPIError(
                config.provider.display_name, response.text, status_code=response.status_code
            )
        if response.status_code >= 400:
            raise TokenExchangeError(response.text)
        return response.json()

    async def exchange_code(self, provider: Provider, code: str) -> TokenSet:
        """grant_type=authorization_code exchange."""
        config = get_provider_config(provider, self._settings)
        data = await self._post_token(
            config,
            {
                "grant_type": "authorization_code",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "redirect_uri": config.redirect_uri,
                "code": code,
            },
        )
        return _parse_token_response(data)

    async def refresh(self, provider: Provider, refresh_token: str) -> TokenSet:
        """grant_type=refresh_token exchange. Keeps the old refresh token unless rotated.

        Raises:
            TokenExchangeError: The provider rejected the refresh token (4xx).
            ProviderAPIError: Transport failure or provider outage (5xx).
        """
        config = get_provider_config(provider, self._settings)
        data = await self._post_token(
            config,
            {
                "grant_type": "refresh_token",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "refresh_token": refresh_token,
            },
        )
        return _parse_token_response(data, fallback_refresh=refresh_token)


# ── CSRF State ──────────────────────────────────────────────────────────────


class OAuthStateStore:
    """Single-use OAuth state records: state -> (tenant_id, provider).

    Args:
        redis: Async Redis client (decode_responses=True).
        ttl_seconds: Lifetime of an unconsumed state.
    """

    KEY_PREFIX = "oauth_state:"

    def __init__(self, redis: aioredis.Redis, ttl_seconds: int = 600) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    async def issue(self, tenant_id: str, provider: Provider) -> str:
        state = secrets.token_hex(32)
        payload = json.dumps({"tenant_id": tenant_id, "provider": provider.value})
        await self._redis.set(f"{self.KEY_PREFIX}{state}", payload, ex=self._ttl)
        return state

    async def consume(self, state: str, provider: Provider) -> str:
        """Validate and delete a state. Returns the tenant id it was issued for.

        Raises:
            OAuthStateError: Unknown, expired, already used, or issued for
                another provider.
        """
        raw = await self._redis.getdel(f"{self.KEY_PREFIX}{state}")
        if raw is None:
            raise OAuthStateError("Invalid or expired state parameter")
        record = json.loads(raw)
        if record.get("provider") != provider.value:
            raise OAuthStateError("State was issued for a different provider")
        return record["tenant_id"]


# ── OAuth Service ───────────────────────────────────────────────────────────


class OAuthService:
    """Connect and disconnect tenant integrations.

    Args:
        settings: Application settings.
        repository: Integration persistence.
        cipher: Process-wide token cipher.
        state_store: CSRF state store.
        client: Token endpoint client.
    """

    def __init__(
        self,
        settings: Settings,
        repository: IntegrationRepository,
        cipher: TokenCipher,
        state_store: OAuthStateStore,
        client: OAuthClient,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._cipher = cipher
        self._state_store = state_store
        self._client = client

    def _settings_redirect(self, **params: str) -> str:
        base = f"{self._settings.APP_BASE_URL.rstrip('/')}{self._settings.SETTINGS_REDIRECT_PATH}"
        return f"{base}?{urlencode(params)}"

    async def begin_authorization(self, tenant_id: str, provider: Provider) -> str:
        """Issue a CSRF state and return the provider authorize URL."""
        state = await self._state_store.issue(tenant_id, provider)
        config = get_provider_config(provider, self._settings)
        logger.info("oauth.authorization_started", tenant_id=tenant_id, provider=provider.value)
        return config.authorize_redirect(state)

    async def complete_authorization(
        self,
        provider: Provider,
        code: str | None,
        state: str | None,
        error: str | None = None,
        error_description: str | None = None,
    ) -> str:
        """Handle the provider callback. Always returns a settings-page redirect URL."""
        name = provider.display_name
        if error:
            logger.warning(
                "oauth.provider_denied",
                provider=provider.value,
                error=error,
                error_description=error_description,
            )
            return self._settings_redirect(error=error_description or error)

        if not state:
            return self._settings_redirect(error="Invalid state parameter")
        try:
            tenant_id = await self._state_store.consume(state, provider)
        except OAuthStateError as exc:
            logger.warning("oauth.state_rejected", provider=provider.value, reason=str(exc))
            return self._settings_redirect(error="Invalid state parameter")

        if not code:
            return self._settings_redirect(error="No authorization code")

        try:
            tokens = await self._client.exchange_code(provider, code)
        except (TokenExchangeError, ProviderAPIError) as exc:
            logger.error(
                "oauth.token_exchange_failed",
                tenant_id=tenant_id,
                provider=provider.value,
                error=str(exc),
            )
            return self._settings_redirect(error=f"Failed to connect {name}")

        settings: dict[str, str] = {}
        if tokens.instance_url:
            settings["instance_url"] = tokens.instance_url

        integration = await self._repository.upsert_connected(
            tenant_id=tenant_id,
            provider=provider,
            access_token=self._cipher.encrypt(tokens.access_token),
            refresh_token=(
                self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
            ),
            token_expires_at=tokens.expires_at,
            settings=settings,
        )
        logger.info(
            "oauth.integration_connected",
            tenant_id=tenant_id,
            provider=provider.value,
            integration_id=integration.id,
        )
        return self._settings_redirect(success=f"{name} connected successfully")

    async def disconnect(self, tenant_id: str, provider: Provider) -> None:
        """Clear tokens and soft-delete the integration.

        Raises:
            IntegrationNotFound: No live integration exists.
        """
        if not await self._repository.disconnect(tenant_id, provider):
            raise IntegrationNotFound(f"{provider.display_name} integration not found")
        logger.info("oauth.integration_disconnected", tenant_id=tenant_id, provider=provider.value)
