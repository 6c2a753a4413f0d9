"""
HubSpot CRM Connector.

Syncs contacts and deals from the CRM v3 object endpoints (``paging.next.after``
cursor) and appends a daily pipeline snapshot built from the deals just read.
Contacts and deals are replaced on every sync; the snapshot keeps one row per
day, the current day's row being rewritten by each sync.
"""

import logging
import time
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dra.sync.connectors.api.oauth import ApiClient, OAuthReportClient
from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.errors import AuthError, SchemaError
from dra.sync.models import DataSourceType, utc_now

logger = logging.getLogger(__name__)

API_BASE = "https://api.hubapi.com"
PAGE_LIMIT = 100

CONTACT_PROPERTIES = [
    "email", "firstname", "lastname", "lifecyclestage", "hs_lead_status",
    "utm_source", "utm_campaign", "utm_medium", "hs_analytics_source", "createdate",
]
DEAL_PROPERTIES = [
    "dealname", "pipeline", "dealstage", "amount", "closedate", "createdate", "hs_is_closed_won",
]


class HubSpotDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    portal_id: Optional[str] = None
    page_size: int = Field(default=PAGE_LIMIT, ge=1, le=PAGE_LIMIT)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """HubSpot ISO-8601 timestamp to naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def contact_row(contact: Dict[str, Any]) -> Dict[str, Any]:
    p = contact.get("properties") or {}
    return {
        "hubspot_id": str(contact.get("id")),
        "email": p.get("email"),
        "first_name": p.get("firstname"),
        "last_name": p.get("lastname"),
        "lifecycle_stage": p.get("lifecyclestage"),
        "lead_source": p.get("hs_analytics_source"),
        "utm_source": p.get("utm_source"),
        "utm_campaign": p.get("utm_campaign"),
        "utm_medium": p.get("utm_medium"),
        "created_date": parse_timestamp(p.get("createdate")),
    }


def deal_row(deal: Dict[str, Any]) -> Dict[str, Any]:
    p = deal.get("properties") or {}
    stage = p.get("dealstage")
    amount = p.get("amount")
    close_date = parse_timestamp(p.get("closedate"))
    return {
        "hubspot_id": str(deal.get("id")),
        "deal_name": p.get("dealname"),
        "pipeline": p.get("pipeline"),
        "deal_stage": stage,
        "amount": float(amount) if amount not in (None, "") else None,
        "close_date": close_date.date() if close_date else None,
        "create_date": parse_timestamp(p.get("createdate")),
        "is_closed_won": p.get("hs_is_closed_won") == "true" or "closedwon" in (stage or "").lower(),
    }


def pipeline_snapshot(deals: List[Dict[str, Any]], contacts: List[Dict[str, Any]],
                      snapshot_date: date) -> Dict[str, Any]:
    """Aggregate open pipeline and closed-won revenue for one day."""
    open_deals = [d for d in deals if not d["is_closed_won"]]
    won_deals = [d for d in deals if d["is_closed_won"]]
    return {
        "snapshot_date": snapshot_date,
        "total_open_deals": len(open_deals),
        "total_pipeline_value": sum(d["amount"] or 0 for d in open_deals),
        "deals_closed_won": len(won_deals),
        "revenue_closed_won": sum(d["amount"] or 0 for d in won_deals),
        "new_leads_created": sum(
            1 for c in contacts if c["created_date"] and c["created_date"].date() == snapshot_date
        ),
    }


class HubSpotConnector(BaseConnector):
    """HubSpot CRM connector."""

    data_types = (DataSourceType.HUBSPOT,)

    def __init__(self, services, http: Optional[ApiClient] = None):
        super().__init__(services)
        self.client = OAuthReportClient(self, DataSourceType.HUBSPOT.value, http)

    def _parse(self, connection_details: Dict[str, Any]) -> HubSpotDetails:
        try:
            return HubSpotDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="hubspot")

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        self._parse(connection_details)
        await self.client.token(connection_details, actor or ActorContext())
        return True

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        account_key = details.portal_id or f"ds{data_source_id}"
        start_time = time.time()

        contacts = await self._sync_objects(data_source_id, "contacts", CONTACT_PROPERTIES, contact_row,
                                            details, account_key, connection_details, options)
        deals = await self._sync_objects(data_source_id, "deals", DEAL_PROPERTIES, deal_row,
                                         details, account_key, connection_details, options)

        today = utc_now().date()
        writer = self._writer(data_source_id, DataSourceType.HUBSPOT, "pipeline_snapshot_daily", options,
                              replace=False, table_type="api_report")
        self.services.store.delete_rows(writer.schema_name, writer.physical_table_name, "snapshot_date", today)
        writer.write([pipeline_snapshot(deals, contacts, today)])
        writer.finish()
        logger.info(f"Pipeline snapshot built for data source {data_source_id} on {today.isoformat()}")

        return SyncResult.from_progress(options.progress, time.time() - start_time)

    async def _sync_objects(self, data_source_id: int, object_type: str, properties: List[str], to_row,
                            details: HubSpotDetails, account_key: str, connection_details: Dict[str, Any],
                            options: SyncOptions) -> List[Dict[str, Any]]:
        writer = self._writer(data_source_id, DataSourceType.HUBSPOT, object_type, options,
                              replace=True, table_type="api_entity")
        url = f"{API_BASE}/crm/v3/objects/{object_type}"
        collected: List[Dict[str, Any]] = []
        after = None
        while True:
            params = {"limit": min(details.page_size, options.batch_size), "properties": ",".join(properties)}
            if after:
                params["after"] = after
            data = await self.client.call("GET", url, connection_details, options.actor,
                                          account_key=account_key, params=params)
            if not isinstance(data, dict) or not isinstance(data.get("results"), list):
                raise SchemaError(f"Unexpected HubSpot {object_type} response")

            rows = [to_row(item) for item in data["results"]]
            writer.write(rows)
            collected.extend(rows)

            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break
        writer.finish(columns=["hubspot_id"])
        logger.info(f"Synced {writer.rows_written} HubSpot {object_type} for data source {data_source_id}")
        return collected
