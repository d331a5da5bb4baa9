"""Exception hierarchy for the sync and scoring pipeline.

Fatal conditions (credential, connector) propagate to the Integration's
visible status. Per-record and per-deal conditions are caught by the
Reconciliation Engine and Scoring Orchestrator and aggregated into their
structured results instead of being raised to the caller.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""


# ── Configuration ───────────────────────────────────────────────────────────


class MissingEncryptionKey(PipelineError):
    """Raised at startup when no credential encryption key is configured."""


# ── Credentials & OAuth ─────────────────────────────────────────────────────


class CredentialExpired(PipelineError):
    """The refresh token is invalid or revoked; the tenant must re-authorize.

    Attributes:
        integration_id: Integration whose credentials are no longer usable.
        provider: Provider name.
    """

    def __init__(self, integration_id: str, provider: str, detail: str) -> None:
        self.integration_id = integration_id
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider} credentials expired, re-authorization required: {detail}")


class OAuthStateError(PipelineError):
    """The OAuth callback state is missing, unknown, expired or mismatched."""


class TokenExchangeError(PipelineError):
    """The provider rejected an authorization-code exchange."""


# ── Provider connectors ─────────────────────────────────────────────────────


class ProviderAPIError(PipelineError):
    """Connector-level fetch failure (auth, quota, outage, timeout).

    Cycle-fatal: the Reconciliation Engine aborts remaining fetches.

    Attributes:
        provider: Provider display name ("Salesforce", "HubSpot").
        status_code: HTTP status, or None for transport failures.
        provider_message: Raw provider error text, surfaced verbatim.
    """

    def __init__(
        self,
        provider: str,
        provider_message: str,
        status_code: int | None = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.provider_message = provider_message
        super().__init__(f"{provider} API error: {provider_message}")


class ProviderRateLimited(ProviderAPIError):
    """HTTP 429 from the provider. Retried with backoff before surfacing."""

    def __init__(
        self,
        provider: str,
        provider_message: str,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(provider, provider_message, status_code=429)
        self.retry_after = retry_after


# ── Reconciliation ──────────────────────────────────────────────────────────


class RecordReconciliationError(PipelineError):
    """Single-record mapping or resolution failure. Non-fatal.

    Attributes:
        entity: "account", "contact", "deal" or "owner".
        external_id: Provider-native id of the failing record.
        category: Machine-readable cause ("missing_owner", "malformed", ...).
        label: Human-readable record label (name or email) for display.
    """

    def __init__(
        self,
        entity: str,
        external_id: str,
        category: str,
        message: str,
        label: str | None = None,
    ) -> None:
        self.entity = entity
        self.external_id = external_id
        self.category = category
        self.label = label
        self.message = message
        super().__init__(message)


class IntegrationNotFound(PipelineError):
    """No connected integration exists for the tenant/provider pair."""


class SyncInProgress(PipelineError):
    """A sync cycle is already running for this integration."""


# ── Scoring ─────────────────────────────────────────────────────────────────


class ModelValidationError(PipelineError):
    """Inference response missing required fields or out of range."""


class InferenceProviderError(PipelineError):
    """Transport or quota failure calling the inference provider."""


class DealNotFound(PipelineError):
    """The deal does not exist for this tenant (or is deleted)."""


class ScoringInProgress(PipelineError):
    """Another scoring operation for the same deal is in flight."""
