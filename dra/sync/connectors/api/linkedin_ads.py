"""
LinkedIn Ads Connector.

Reads one ad account through the Marketing API (Rest.li 2.0, pinned
``LinkedIn-Version``):

- campaign_groups, campaigns, creatives: entity snapshots from the
  ``q=search`` finders (``pageToken`` cursor), replaced on every sync
- campaign_analytics, creative_analytics: daily ``adAnalytics`` rows
  written through ReportSync, incremental by date

``adAnalytics`` is not paged and caps a response at 15,000 elements, so the
date window is requested in chunks of ``analytics_chunk_days``.
"""

import json
import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dra.sync.connectors.api.google_ads import flatten_result
from dra.sync.connectors.api.oauth import ApiClient, OAuthReportClient, ReportSync, to_number
from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.errors import AuthError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)

API_BASE = "https://api.linkedin.com/rest"
API_VERSION = "202601"
HEADERS = {"LinkedIn-Version": API_VERSION, "X-Restli-Protocol-Version": "2.0.0"}

# adAnalytics metric -> column; at most 20 fields besides dateRange/pivotValues
METRIC_COLUMNS: Dict[str, str] = {
    "impressions": "impressions",
    "clicks": "clicks",
    "costInLocalCurrency": "cost_local",
    "costInUsd": "cost_usd",
    "externalWebsiteConversions": "external_conversions",
    "externalWebsitePostClickConversions": "post_click_conversions",
    "externalWebsitePostViewConversions": "post_view_conversions",
    "oneClickLeads": "one_click_leads",
    "videoViews": "video_views",
    "videoCompletions": "video_completions",
    "videoWatchTime": "video_watch_time_ms",
    "totalEngagements": "total_engagements",
    "landingPageClicks": "landing_page_clicks",
    "approximateMemberReach": "approximate_reach",
    "follows": "follows",
    "likes": "likes",
    "comments": "comments",
    "shares": "shares",
}

# Missing rather than zero when LinkedIn omits them
NULLABLE_METRICS = {"costInLocalCurrency", "costInUsd", "approximateMemberReach"}

ANALYTICS_PIVOTS: Dict[str, str] = {
    "campaign_analytics": "CAMPAIGN",
    "creative_analytics": "CREATIVE",
}

ENTITY_FINDERS: Dict[str, str] = {
    "campaign_groups": "adCampaignGroups",
    "campaigns": "adCampaigns",
    "creatives": "adCreatives",
}

EPOCH_MS_COLUMNS = {"run_schedule_start", "run_schedule_end"}


class LinkedInAdsDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ad_account_id: int
    report_types: List[str] = Field(default_factory=lambda: ["campaign_analytics"])
    entities: List[str] = Field(default_factory=lambda: list(ENTITY_FINDERS))
    analytics_chunk_days: int = Field(default=90, ge=1)
    page_size: int = Field(default=1000, ge=1)

    @property
    def account_urn(self) -> str:
        return f"urn:li:sponsoredAccount:{self.ad_account_id}"


def restli_date(value: date) -> str:
    return f"(year:{value.year},month:{value.month},day:{value.day})"


def restli_date_range(start: date, end: date) -> str:
    return f"(start:{restli_date(start)},end:{restli_date(end)})"


def from_linkedin_date(value: Dict[str, int]) -> date:
    return date(value["year"], value["month"], value["day"])


def from_epoch_ms(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, timezone.utc).replace(tzinfo=None)


def analytics_row(element: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
    """One adAnalytics element to a row keyed by day and pivot entity."""
    try:
        day = from_linkedin_date(element["dateRange"]["start"])
    except (KeyError, TypeError, ValueError):
        raise SchemaError("adAnalytics element without a usable dateRange")
    urn = (element.get("pivotValues") or [""])[0]
    row: Dict[str, Any] = {
        "date": day,
        "entity_type": entity_type,
        "entity_id": urn.rsplit(":", 1)[-1] or None,
        "entity_urn": urn or None,
    }
    for field, column in METRIC_COLUMNS.items():
        value = element.get(field)
        if value is None:
            row[column] = None if field in NULLABLE_METRICS else 0
        else:
            row[column] = float(value) if field in NULLABLE_METRICS else to_number(value)
    return row


def entity_row(element: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a campaign group, campaign or creative."""
    stamps = element.get("changeAuditStamps") or {}
    row: Dict[str, Any] = {}
    for name, value in flatten_result({k: v for k, v in element.items() if k != "changeAuditStamps"}).items():
        if isinstance(value, list):
            row[name] = json.dumps(value)
        elif name in EPOCH_MS_COLUMNS:
            row[name] = from_epoch_ms(value)
        elif name.endswith("_amount"):
            row[name] = to_number(value)
        else:
            row[name] = value
    row["created_at"] = from_epoch_ms((stamps.get("created") or {}).get("time"))
    row["last_modified_at"] = from_epoch_ms((stamps.get("lastModified") or {}).get("time"))
    return row


class LinkedInAdsConnector(BaseConnector):
    """LinkedIn Marketing API connector."""

    data_types = (DataSourceType.LINKEDIN_ADS,)
    supports_watermark = True

    def __init__(self, services, http: Optional[ApiClient] = None):
        super().__init__(services)
        self.client = OAuthReportClient(self, DataSourceType.LINKEDIN_ADS.value, http)

    def _parse(self, connection_details: Dict[str, Any]) -> LinkedInAdsDetails:
        try:
            details = LinkedInAdsDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="linkedin_ads")
        unknown = [r for r in details.report_types if r not in ANALYTICS_PIVOTS]
        unknown += [e for e in details.entities if e not in ENTITY_FINDERS]
        if unknown:
            raise SchemaError(f"Unknown LinkedIn Ads tables: {', '.join(unknown)}")
        return details

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        details = self._parse(connection_details)
        await self._get(f"adAccounts/{details.ad_account_id}", details, connection_details,
                        actor or ActorContext())
        return True

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        start_time = time.time()

        for entity in details.entities:
            await self._sync_entity(data_source_id, entity, details, connection_details, options)

        reports = {
            name: self._analytics_fetcher(details, connection_details, options, name)
            for name in details.report_types
        }
        await ReportSync(self, DataSourceType.LINKEDIN_ADS).run(
            data_source_id, connection_details, options, reports
        )
        return SyncResult.from_progress(options.progress, time.time() - start_time)

    async def _get(self, path: str, details: LinkedInAdsDetails, connection_details: Dict[str, Any],
                   actor: ActorContext, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        data = await self.client.call(
            "GET", f"{API_BASE}/{path}", connection_details, actor,
            account_key=str(details.ad_account_id), headers=HEADERS, params=params,
        )
        if not isinstance(data, dict):
            raise SchemaError(f"Unexpected LinkedIn response for {path}")
        return data

    async def _sync_entity(self, data_source_id: int, entity: str, details: LinkedInAdsDetails,
                           connection_details: Dict[str, Any], options: SyncOptions) -> None:
        writer = self._writer(data_source_id, DataSourceType.LINKEDIN_ADS, entity, options,
                              replace=True, table_type="api_entity")
        path = f"adAccounts/{details.ad_account_id}/{ENTITY_FINDERS[entity]}"
        page_token = None
        while True:
            params = {"q": "search", "pageSize": min(details.page_size, options.batch_size)}
            if page_token:
                params["pageToken"] = page_token
            data = await self._get(path, details, connection_details, options.actor, params)
            elements = data.get("elements")
            if not isinstance(elements, list):
                raise SchemaError(f"Unexpected {entity} search response")
            writer.write([entity_row(element) for element in elements])

            page_token = (data.get("metadata") or {}).get("nextPageToken")
            if not page_token:
                break
        writer.finish()
        logger.info(f"Synced {writer.rows_written} LinkedIn {entity} for data source {data_source_id}")

    def _analytics_fetcher(self, details: LinkedInAdsDetails, connection_details: Dict[str, Any],
                           options: SyncOptions, report_name: str):
        pivot = ANALYTICS_PIVOTS[report_name]
        entity_type = pivot.lower()
        fields = ",".join(["dateRange", "pivotValues", *METRIC_COLUMNS])

        async def fetch(start: date, end: date) -> AsyncIterator[List[Dict[str, Any]]]:
            chunk_start = start
            while chunk_start <= end:
                chunk_end = min(end, chunk_start + timedelta(days=details.analytics_chunk_days - 1))
                data = await self._get("adAnalytics", details, connection_details, options.actor, {
                    "q": "analytics",
                    "pivot": pivot,
                    "timeGranularity": "DAILY",
                    "dateRange": restli_date_range(chunk_start, chunk_end),
                    "accounts": f"List({details.account_urn})",
                    "fields": fields,
                })
                elements = data.get("elements")
                if not isinstance(elements, list):
                    raise SchemaError(f"Unexpected adAnalytics response for {report_name}")

                rows = sorted((analytics_row(e, entity_type) for e in elements), key=lambda r: r["date"])
                for offset in range(0, len(rows), options.batch_size):
                    yield rows[offset:offset + options.batch_size]
                chunk_start = chunk_end + timedelta(days=1)

        return fetch
