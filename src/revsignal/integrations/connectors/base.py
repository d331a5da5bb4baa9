"""CRM connector abstract base class -- the capability set every provider implements.

A connector is built from an Integration record and used as an async
context manager for exactly one sync cycle:

    async with build_connector(integration, vault, settings) as connector:
        owners = await connector.fetch_owners()

Entering asks the Credential Vault for a fresh access token and opens an
httpx client; leaving closes the client and drops the token.

Transport errors, HTTP 429 and HTTP 5xx are retried with tenacity
(bounded attempts, exponential backoff) before surfacing as
ProviderAPIError. Any other non-success status raises immediately.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from src.revsignal.config import Settings
from src.revsignal.core.errors import ProviderAPIError, ProviderRateLimited
from src.revsignal.integrations.schemas import (
    IntegrationRead,
    Provider,
    ProviderAccount,
    ProviderContact,
    ProviderDeal,
    ProviderOwner,
)
from src.revsignal.integrations.vault import CredentialVault

logger = structlog.get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """429, 5xx and transport failures (status_code None) are worth retrying."""
    if isinstance(exc, ProviderRateLimited):
        return True
    if isinstance(exc, ProviderAPIError):
        return exc.status_code is None or exc.status_code >= 500
    return False


# ── Field Parsing ───────────────────────────────────────────────────────────


def to_int(value: Any) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def to_float(value: Any) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def to_datetime(value: Any) -> datetime | None:
    """Parse ISO-8601 dates/datetimes (with or without 'Z'), always UTC-aware."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Connector ABC ───────────────────────────────────────────────────────────


class CRMConnector(ABC):
    """Abstract provider connector.

    Methods:
        fetch_owners: Provider users who can own deals.
        fetch_accounts: Companies changed since the cursor (all when None).
        fetch_contacts: Contacts changed since the cursor.
        fetch_deals: Deals/opportunities changed since the cursor.
        fetch_stage_metadata: Stage id -> label map, or None when the
            provider exposes labels directly.

    Args:
        integration: Integration record this connector reads for.
        vault: Credential Vault supplying a fresh access token.
        settings: Application settings (timeout, retry attempts).
        transport: Optional httpx transport (tests inject a MockTransport).
        retry_wait: Optional tenacity wait strategy (tests use wait_none()).
    """

    provider: Provider

    def __init__(
        self,
        integration: IntegrationRead,
        vault: CredentialVault,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._integration = integration
        self._vault = vault
        self._settings = settings
        self._transport = transport
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)
        self._client: httpx.AsyncClient | None = None

    @property
    def display_name(self) -> str:
        return self.provider.display_name

    @abstractmethod
    def _base_url(self) -> str:
        """Root URL all relative request paths resolve against."""
        ...

    async def __aenter__(self) -> CRMConnector:
        base_url = self._base_url()
        access_token = await self._vault.ensure_fresh_token(self._integration)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=self._settings.PROVIDER_HTTP_TIMEOUT,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict:
        if self._client is None:
            raise RuntimeError("Connector used outside its async context")
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as exc:
            raise ProviderAPIError(self.display_name, f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 429:
            retry_after = to_int(response.headers.get("Retry-After"))
            raise ProviderRateLimited(self.display_name, response.text, retry_after=retry_after)
        if response.status_code >= 400:
            raise ProviderAPIError(
                self.display_name, response.text, status_code=response.status_code
            )
        return response.json()

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict:
        """Send one request with retry on transient failures.

        Raises:
            ProviderAPIError: Non-success response (after retries where the
                failure was transient), carrying the raw provider text.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self._settings.PROVIDER_MAX_RETRIES)),
            wait=self._retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        "connector.request_retry",
                        provider=self.provider.value,
                        path=path,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._send(method, path, params=params, json=json)
        raise AssertionError("unreachable")

    # ── Capability Set ──────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_owners(self) -> list[ProviderOwner]:
        ...

    @abstractmethod
    async def fetch_accounts(self, since: datetime | None = None) -> list[ProviderAccount]:
        ...

    @abstractmethod
    async def fetch_contacts(self, since: datetime | None = None) -> list[ProviderContact]:
        ...

    @abstractmethod
    async def fetch_deals(self, since: datetime | None = None) -> list[ProviderDeal]:
        ...

    async def fetch_stage_metadata(self) -> dict[str, str] | None:
        """Stage id -> label. Providers with label-valued stages return None."""
        return None
