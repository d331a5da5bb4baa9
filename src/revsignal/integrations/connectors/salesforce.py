"""Salesforce connector -- SOQL reads against the REST query endpoint.

Each fetch is a single SOQL query capped at QUERY_LIMIT rows, newest first.
With a cursor the query filters on LastModifiedDate; without one it reads
unfiltered. Opportunities carry explicit IsClosed/IsWon flags and
label-valued StageName, so no stage metadata is fetched.

The per-org API host comes from the instance_url the token endpoint
returned at connect time, stored in the integration settings.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.revsignal.core.errors import ProviderAPIError
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

API_VERSION = "v59.0"
QUERY_LIMIT = 500


def soql_datetime(value: datetime) -> str:
    """SOQL datetime literal (unquoted ISO-8601 in UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_soql(
    fields: str,
    sobject: str,
    conditions: list[str] | None = None,
    since: datetime | None = None,
) -> str:
    """SELECT ... FROM ... [WHERE ...] ORDER BY LastModifiedDate DESC LIMIT n."""
    where = list(conditions or [])
    if since is not None:
        where.append(f"LastModifiedDate > {soql_datetime(since)}")
    soql = f"SELECT {fields} FROM {sobject}"
    if where:
        soql += " WHERE " + " AND ".join(where)
    return f"{soql} ORDER BY LastModifiedDate DESC LIMIT {QUERY_LIMIT}"


class SalesforceConnector(CRMConnector):
    provider = Provider.SALESFORCE

    def _base_url(self) -> str:
        instance_url = self._integration.settings.get("instance_url")
        if not instance_url:
            raise ProviderAPIError(
                self.display_name, "Instance URL missing; reconnect Salesforce"
            )
        return instance_url.rstrip("/")

    async def _query(self, soql: str) -> list[dict]:
        data = await self._request(
            "GET", f"/services/data/{API_VERSION}/query", params={"q": soql}
        )
        return data.get("records", [])

    async def fetch_owners(self) -> list[ProviderOwner]:
        records = await self._query(
            "SELECT Id, Email, FirstName, LastName FROM User WHERE IsActive = true"
        )
        return [
            ProviderOwner(
                external_id=r["Id"],
                email=r.get("Email"),
                first_name=r.get("FirstName"),
                last_name=r.get("LastName"),
            )
            for r in records
            if r.get("Id")
        ]

    async def fetch_accounts(self, since: datetime | None = None) -> list[ProviderAccount]:
        records = await self._query(
            build_soql(
                "Id, Name, Website, Industry, NumberOfEmployees, AnnualRevenue, LastModifiedDate",
                "Account",
                since=since,
            )
        )
        return [
            ProviderAccount(
                external_id=r["Id"],
                name=r.get("Name"),
                domain=r.get("Website"),
                industry=r.get("Industry"),
                employee_count=to_int(r.get("NumberOfEmployees")),
                annual_revenue=to_float(r.get("AnnualRevenue")),
                modified_at=to_datetime(r.get("LastModifiedDate")),
            )
            for r in records
            if r.get("Id")
        ]

    async def fetch_contacts(self, since: datetime | None = None) -> list[ProviderContact]:
        records = await self._query(
            build_soql(
                "Id, AccountId, Email, FirstName, LastName, Title, Phone, LastModifiedDate",
                "Contact",
                conditions=["Email != null"],
                since=since,
            )
        )
        return [
            ProviderContact(
                external_id=r["Id"],
                email=r.get("Email"),
                first_name=r.get("FirstName"),
                last_name=r.get("LastName"),
                title=r.get("Title"),
                phone=r.get("Phone"),
                account_external_id=r.get("AccountId"),
                modified_at=to_datetime(r.get("LastModifiedDate")),
            )
            for r in records
            if r.get("Id")
        ]

    async def fetch_deals(self, since: datetime | None = None) -> list[ProviderDeal]:
        records = await self._query(
            build_soql(
                "Id, AccountId, OwnerId, Name, Description, Amount, StageName, Probability, "
                "CloseDate, IsClosed, IsWon, LastModifiedDate, CreatedDate",
                "Opportunity",
                since=since,
            )
        )
        return [
            ProviderDeal(
                external_id=r["Id"],
                name=r.get("Name"),
                description=r.get("Description"),
                amount=to_float(r.get("Amount")),
                stage=r.get("StageName"),
                probability=to_float(r.get("Probability")),
                close_date=to_datetime(r.get("CloseDate")),
                owner_external_id=r.get("OwnerId"),
                account_external_id=r.get("AccountId"),
                is_closed=bool(r.get("IsClosed")),
                is_won=bool(r.get("IsWon")),
                modified_at=to_datetime(r.get("LastModifiedDate")),
            )
            for r in records
            if r.get("Id")
        ]
