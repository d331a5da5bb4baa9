"""HubSpot connector -- CRM v3 objects, owners and deal pipelines.

Without a cursor each object type is read with GET /crm/v3/objects/{type};
with one, POST /crm/v3/objects/{type}/search filters on
hs_lastmodifieddate >= cursor (epoch milliseconds). Pages are capped at
PAGE_LIMIT records.

Deal stages are pipeline stage ids; fetch_stage_metadata() returns the id ->
label map the Reconciliation Engine uses before storing a stage.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.revsignal.integrations.connectors.base import (
    CRMConnector,
    to_datetime,
    to_float,
    to_int,
)
from src.revsignal.integrations.schemas import (
    Provider,
    ProviderAccount,
    ProviderContact,
    ProviderDeal,
    ProviderOwner,
)

logger = structlog.get_logger(__name__)

API_BASE = "https://api.hubapi.com"
PAGE_LIMIT = 100

COMPANY_PROPERTIES = [
    "name",
    "domain",
    "industry",
    "numberofemployees",
    "annualrevenue",
    "hs_lastmodifieddate",
]
CONTACT_PROPERTIES = [
    "email",
    "firstname",
    "lastname",
    "jobtitle",
    "phone",
    "hs_lastmodifieddate",
    "associatedcompanyid",
]
DEAL_PROPERTIES = [
    "dealname",
    "description",
    "amount",
    "deal_currency_code",
    "dealstage",
    "pipeline",
    "closedate",
    "createdate",
    "hs_lastmodifieddate",
    "hubspot_owner_id",
    "hs_deal_stage_probability",
]


def epoch_millis(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return str(int(value.timestamp() * 1000))


def modified_since_filter(since: datetime) -> list[dict]:
    return [
        {
            "filters": [
                {
                    "propertyName": "hs_lastmodifieddate",
                    "operator": "GTE",
                    "value": epoch_millis(since),
                }
            ]
        }
    ]


class HubSpotConnector(CRMConnector):
    provider = Provider.HUBSPOT

    def _base_url(self) -> str:
        return API_BASE

    async def _list_objects(
        self, object_type: str, properties: list[str], since: datetime | None
    ) -> list[dict]:
        if since is not None:
            data = await self._request(
                "POST",
                f"/crm/v3/objects/{object_type}/search",
                json={
                    "filterGroups": modified_since_filter(since),
                    "properties": properties,
                    "limit": PAGE_LIMIT,
                },
            )
        else:
            data = await self._request(
                "GET",
                f"/crm/v3/objects/{object_type}",
                params={"limit": PAGE_LIMIT, "properties": ",".join(properties)},
            )
        return [r for r in data.get("results", []) if r.get("id")]

    async def fetch_owners(self) -> list[ProviderOwner]:
        data = await self._request("GET", "/crm/v3/owners")
        return [
            ProviderOwner(
                external_id=str(o["id"]),
                email=o.get("email"),
                first_name=o.get("firstName"),
                last_name=o.get("lastName"),
            )
            for o in data.get("results", [])
            if o.get("id")
        ]

    async def fetch_stage_metadata(self) -> dict[str, str]:
        data = await self._request("GET", "/crm/v3/pipelines/deals")
        stages: dict[str, str] = {}
        for pipeline in data.get("results", []):
            for stage in pipeline.get("stages", []):
                stages[str(stage["id"])] = stage.get("label") or str(stage["id"])
        return stages

    async def fetch_accounts(self, since: datetime | None = None) -> list[ProviderAccount]:
        results = await self._list_objects("companies", COMPANY_PROPERTIES, since)
        accounts = []
        for r in results:
            props = r.get("properties") or {}
            accounts.append(
                ProviderAccount(
                    external_id=str(r["id"]),
                    name=props.get("name"),
                    domain=props.get("domain"),
                    industry=props.get("industry"),
                    employee_count=to_int(props.get("numberofemployees")),
                    annual_revenue=to_float(props.get("annualrevenue")),
                    modified_at=to_datetime(props.get("hs_lastmodifieddate")),
                )
            )
        return accounts

    async def fetch_contacts(self, since: datetime | None = None) -> list[ProviderContact]:
        results = await self._list_objects("contacts", CONTACT_PROPERTIES, since)
        contacts = []
        for r in results:
            props = r.get("properties") or {}
            contacts.append(
                ProviderContact(
                    external_id=str(r["id"]),
                    email=props.get("email"),
                    first_name=props.get("firstname"),
                    last_name=props.get("lastname"),
                    title=props.get("jobtitle"),
                    phone=props.get("phone"),
                    account_external_id=props.get("associatedcompanyid") or None,
                    modified_at=to_datetime(props.get("hs_lastmodifieddate")),
                )
            )
        return contacts

    async def fetch_deals(self, since: datetime | None = None) -> list[ProviderDeal]:
        results = await self._list_objects("deals", DEAL_PROPERTIES, since)
        deals = []
        for r in results:
            props = r.get("properties") or {}
            deals.append(
                ProviderDeal(
                    external_id=str(r["id"]),
                    name=props.get("dealname"),
                    description=props.get("description"),
                    amount=to_float(props.get("amount")),
                    currency=props.get("deal_currency_code") or None,
                    stage=props.get("dealstage"),
                    probability=to_float(props.get("hs_deal_stage_probability")),
                    close_date=to_datetime(props.get("closedate")),
                    owner_external_id=props.get("hubspot_owner_id") or None,
                    modified_at=to_datetime(props.get("hs_lastmodifieddate")),
                )
            )
        return deals
