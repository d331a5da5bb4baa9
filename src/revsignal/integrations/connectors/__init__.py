"""Provider connectors -- one CRMConnector implementation per CRM.

Dispatch is by the Provider tag stored on the Integration record:
- SalesforceConnector: SOQL over the REST query endpoint
- HubSpotConnector: CRM v3 objects, owners and pipelines
"""

from __future__ import annotations

import httpx
from tenacity.wait import wait_base

from src.revsignal.config import Settings
from src.revsignal.integrations.connectors.base import CRMConnector
from src.revsignal.integrations.connectors.hubspot import HubSpotConnector
from src.revsignal.integrations.connectors.salesforce import SalesforceConnector
from src.revsignal.integrations.schemas import IntegrationRead, Provider
from src.revsignal.integrations.vault import CredentialVault

CONNECTORS: dict[Provider, type[CRMConnector]] = {
    Provider.SALESFORCE: SalesforceConnector,
    Provider.HUBSPOT: HubSpotConnector,
}


def build_connector(
    integration: IntegrationRead,
    vault: CredentialVault,
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    retry_wait: wait_base | None = None,
) -> CRMConnector:
    """Construct the connector for the integration's provider."""
    connector_cls = CONNECTORS[integration.provider]
    return connector_cls(
        integration,
        vault,
        settings,
        transport=transport,
        retry_wait=retry_wait,
    )


__all__ = [
    "CONNECTORS",
    "CRMConnector",
    "HubSpotConnector",
    "SalesforceConnector",
    "build_connector",
]
