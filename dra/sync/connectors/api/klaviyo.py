"""
Klaviyo Connector.

Authenticated with a private API key (``Klaviyo-API-Key``) instead of OAuth.

Tables written:
- campaigns: email campaign metadata, replaced on every sync
- campaign_metrics: Campaign Values Report totals for each sent campaign
- flow_metrics: Flow Values Report totals for each flow message

The values reports return aggregates over a fixed timeframe rather than daily
rows, so each sync stores them under the day it ran (``metric_date``) and
rewrites that day's rows when it runs again. A report request that fails is
recorded in the sync errors and the remaining reports still run.
"""

import hashlib
import logging
import time
from datetime import date
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, ConfigDict, Field

from dra.sync.connectors.api.hubspot import parse_timestamp
from dra.sync.connectors.api.oauth import ApiClient, ApiKeyClient
from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.errors import AuthError, FetchError, SchemaError
from dra.sync.models import DataSourceType, utc_now

logger = logging.getLogger(__name__)

API_BASE = "https://a.klaviyo.com/api"
REVISION = "2024-02-15"
HEADERS = {"revision": REVISION, "Accept": "application/json"}

CAMPAIGN_STATISTICS: Dict[str, str] = {
    "sent_count": "sends",
    "open_count": "opens",
    "open_unique_count": "unique_opens",
    "click_count": "clicks",
    "click_unique_count": "unique_clicks",
    "unsubscribed_count": "unsubscribes",
    "bounced_count": "bounces",
    "revenue": "revenue",
    "placed_order_count": "placed_orders",
}
FLOW_STATISTICS: Dict[str, str] = {
    "sent_count": "emails_sent",
    "open_count": "opens",
    "click_count": "clicks",
    "revenue": "revenue",
}

# Campaigns with delivery data worth a report request
REPORTED_STATUSES = {"sent", "cancelled"}


class KlaviyoDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    api_key: str
    conversion_metric_id: Optional[str] = None
    timeframe: str = "last_365_days"
    page_size: int = Field(default=50, ge=1, le=100)


def statistics_row(statistics: Dict[str, Any], columns: Dict[str, str]) -> Dict[str, Any]:
    row = {}
    for name, column in columns.items():
        value = statistics.get(name) or 0
        row[column] = float(value) if name == "revenue" else int(float(value))
    return row


def campaign_row(campaign: Dict[str, Any]) -> Dict[str, Any]:
    attributes = campaign.get("attributes") or {}
    return {
        "klaviyo_id": campaign.get("id"),
        "campaign_name": attributes.get("name"),
        "subject_line": (attributes.get("message") or {}).get("subject_line"),
        "send_time": parse_timestamp(attributes.get("send_time")),
        "status": attributes.get("status"),
    }


def next_cursor(links: Optional[Dict[str, Any]]) -> Optional[str]:
    """``page[cursor]`` of the ``links.next`` URL."""
    next_url = (links or {}).get("next")
    if not next_url:
        return None
    return (parse_qs(urlparse(next_url).query).get("page[cursor]") or [None])[0]


class KlaviyoConnector(BaseConnector):
    """Klaviyo email marketing connector."""

    data_types = (DataSourceType.KLAVIYO,)

    def __init__(self, services, http: Optional[ApiClient] = None):
        super().__init__(services)
        self.client = ApiKeyClient(self, DataSourceType.KLAVIYO.value, "Klaviyo-API-Key", http=http)

    def _parse(self, connection_details: Dict[str, Any]) -> KlaviyoDetails:
        try:
            return KlaviyoDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="klaviyo")

    async def _call(self, method: str, path: str, details: KlaviyoDetails, connection_details: Dict[str, Any],
                    actor: ActorContext, params: Optional[Dict[str, Any]] = None, json: Any = None) -> Any:
        headers = dict(HEADERS, **({"Content-Type": "application/json"} if json is not None else {}))
        account_key = hashlib.sha256(details.api_key.encode()).hexdigest()[:12]
        return await self.client.call(method, f"{API_BASE}/{path}", connection_details, actor,
                                      account_key=account_key, headers=headers, params=params, json=json)

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        details = self._parse(connection_details)
        data = await self._call("GET", "accounts/", details, connection_details, actor or ActorContext())
        if not isinstance(data, dict) or "data" not in data:
            raise SchemaError("Unexpected Klaviyo accounts response")
        return True

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        start_time = time.time()
        today = utc_now().date()

        campaigns = await self._sync_campaigns(data_source_id, details, connection_details, options)

        rows = []
        for campaign in campaigns:
            if campaign["status"] not in REPORTED_STATUSES:
                continue
            options.cancel_token.raise_if_cancelled()
            results = await self._values_report(
                "campaign-values-report", details, connection_details, options, list(CAMPAIGN_STATISTICS),
                f'equals(campaign_id,"{campaign["klaviyo_id"]}")',
            )
            for result in results or []:
                rows.append({
                    "campaign_id": campaign["klaviyo_id"], "metric_date": today,
                    **statistics_row(result.get("statistics") or {}, CAMPAIGN_STATISTICS),
                })
        self._write_metrics(data_source_id, "campaign_metrics", rows, today, options)

        options.cancel_token.raise_if_cancelled()
        results = await self._values_report(
            "flow-values-report", details, connection_details, options, list(FLOW_STATISTICS)
        )
        if results is not None:
            rows = []
            for result in results:
                groupings = result.get("groupings") or {}
                flow_id = result.get("flow_id") or groupings.get("flow_id")
                if not flow_id:
                    continue
                rows.append({
                    "flow_id": flow_id,
                    "flow_name": result.get("flow_message_name") or groupings.get("flow_message_name"),
                    "metric_date": today,
                    **statistics_row(result.get("statistics") or {}, FLOW_STATISTICS),
                })
            self._write_metrics(data_source_id, "flow_metrics", rows, today, options)

        return SyncResult.from_progress(options.progress, time.time() - start_time)

    async def _sync_campaigns(self, data_source_id: int, details: KlaviyoDetails,
                              connection_details: Dict[str, Any], options: SyncOptions) -> List[Dict[str, Any]]:
        writer = self._writer(data_source_id, DataSourceType.KLAVIYO, "campaigns", options,
                              replace=True, table_type="api_entity")
        collected: List[Dict[str, Any]] = []
        cursor = None
        while True:
            params = {"filter": "equals(messages.channel,'email')", "page[size]": details.page_size}
            if cursor:
                params["page[cursor]"] = cursor
            data = await self._call("GET", "campaigns/", details, connection_details, options.actor, params)
            if not isinstance(data, dict) or not isinstance(data.get("data"), list):
                raise SchemaError("Unexpected Klaviyo campaigns response")

            rows = [campaign_row(item) for item in data["data"]]
            writer.write(rows)
            collected.extend(rows)

            cursor = next_cursor(data.get("links"))
            if not cursor:
                break
        writer.finish(columns=["klaviyo_id"])
        logger.info(f"Synced {writer.rows_written} Klaviyo campaigns for data source {data_source_id}")
        return collected

    async def _values_report(self, report_type: str, details: KlaviyoDetails, connection_details: Dict[str, Any],
                             options: SyncOptions, statistics: List[str],
                             report_filter: Optional[str] = None) -> Optional[List[Dict[str, Any]]]:
        """Results of one values report, or None when the request failed."""
        attributes: Dict[str, Any] = {
            "statistics": statistics,
            "timeframe": {"key": details.timeframe},
            "conversion_metric_id": details.conversion_metric_id,
        }
        if report_filter:
            attributes["filter"] = report_filter
        try:
            data = await self._call("POST", f"{report_type}s/", details, connection_details, options.actor,
                                    json={"data": {"type": report_type, "attributes": attributes}})
        except FetchError as e:
            logger.warning(f"Klaviyo {report_type} failed: {e}")
            options.progress.errors.append({"table": report_type, "error": str(e)})
            return None
        try:
            return list(data["data"]["attributes"]["results"])
        except (KeyError, TypeError):
            raise SchemaError(f"Unexpected Klaviyo {report_type} response")

    def _write_metrics(self, data_source_id: int, table: str, rows: List[Dict[str, Any]], today: date,
                       options: SyncOptions) -> None:
        writer = self._writer(data_source_id, DataSourceType.KLAVIYO, table, options,
                              replace=False, table_type="api_report")
        self.services.store.delete_rows(writer.schema_name, writer.physical_table_name, "metric_date", today)
        for offset in range(0, len(rows), options.batch_size):
            writer.write(rows[offset:offset + options.batch_size])
        writer.finish()
