"""
Google Ads Connector.

Runs GAQL reports through ``googleAds:search`` with page tokens. Nested
result objects are flattened (``campaign.name`` -> ``campaign_name``) and
``segments.date`` becomes the ``date`` column.
"""

import logging
import time
from datetime import date
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dra.sync.connectors.api.oauth import (
    ApiClient, OAuthReportClient, ReportSync, parse_report_date, to_number,
)
from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.errors import AuthError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)

API_VERSION = "v17"
API_BASE = f"https://googleads.googleapis.com/{API_VERSION}"

# GAQL per report; {start} and {end} are ISO dates
REPORT_QUERIES: Dict[str, str] = {
    "campaigns": (
        "SELECT segments.date, campaign.id, campaign.name, campaign.status, "
        "metrics.impressions, metrics.clicks, metrics.cost_micros, metrics.conversions, "
        "metrics.conversions_value "
        "FROM campaign WHERE segments.date BETWEEN '{start}' AND '{end}' ORDER BY segments.date"
    ),
    "ad_groups": (
        "SELECT segments.date, campaign.id, ad_group.id, ad_group.name, ad_group.status, "
        "metrics.impressions, metrics.clicks, metrics.cost_micros, metrics.conversions "
        "FROM ad_group WHERE segments.date BETWEEN '{start}' AND '{end}' ORDER BY segments.date"
    ),
    "keywords": (
        "SELECT segments.date, ad_group.id, ad_group_criterion.criterion_id, "
        "ad_group_criterion.keyword.text, ad_group_criterion.keyword.match_type, "
        "metrics.impressions, metrics.clicks, metrics.cost_micros "
        "FROM keyword_view WHERE segments.date BETWEEN '{start}' AND '{end}' ORDER BY segments.date"
    ),
}


class GoogleAdsDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    customer_id: str
    developer_token: str
    login_customer_id: Optional[str] = None
    report_types: List[str] = Field(default_factory=lambda: ["campaigns"])

    @property
    def normalized_customer_id(self) -> str:
        return self.customer_id.replace("-", "")


def flatten_result(result: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten one search result, camelCase keys become snake_case."""
    row: Dict[str, Any] = {}
    for key, value in result.items():
        snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in key)
        name = f"{prefix}_{snake}" if prefix else snake
        if isinstance(value, dict):
            row.update(flatten_result(value, name))
        else:
            row[name] = value
    return row


def result_to_row(result: Dict[str, Any]) -> Dict[str, Any]:
    row = {}
    for name, value in flatten_result(result).items():
        if name == "segments_date":
            row["date"] = parse_report_date(value)
        elif name.startswith("metrics_"):
            row[name[len("metrics_"):]] = to_number(value)
        else:
            row[name] = value
    if isinstance(row.get("cost_micros"), (int, float)):
        row["cost"] = row["cost_micros"] / 1_000_000
    return row


class GoogleAdsConnector(BaseConnector):
    """Google Ads reporting connector."""

    data_types = (DataSourceType.GOOGLE_ADS,)
    supports_watermark = True

    def __init__(self, services, http: Optional[ApiClient] = None):
        super().__init__(services)
        self.client = OAuthReportClient(self, DataSourceType.GOOGLE_ADS.value, http)

    def _parse(self, connection_details: Dict[str, Any]) -> GoogleAdsDetails:
        try:
            details = GoogleAdsDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="google_ads")
        unknown = [r for r in details.report_types if r not in REPORT_QUERIES]
        if unknown:
            raise SchemaError(f"Unknown Google Ads report types: {', '.join(unknown)}")
        return details

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        self._parse(connection_details)
        await self.client.token(connection_details, actor or ActorContext())
        return True

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        start_time = time.time()

        reports = {
            name: self._report_fetcher(details, connection_details, options, name)
            for name in details.report_types
        }
        await ReportSync(self, DataSourceType.GOOGLE_ADS).run(
            data_source_id, connection_details, options, reports
        )
        return SyncResult.from_progress(options.progress, time.time() - start_time)

    def _report_fetcher(self, details: GoogleAdsDetails, connection_details: Dict[str, Any],
                        options: SyncOptions, report_name: str):
        customer_id = details.normalized_customer_id
        url = f"{API_BASE}/customers/{customer_id}/googleAds:search"
        headers = {"developer-token": details.developer_token}
        if details.login_customer_id:
            headers["login-customer-id"] = details.login_customer_id.replace("-", "")

        async def fetch(start: date, end: date) -> AsyncIterator[List[Dict[str, Any]]]:
            query = REPORT_QUERIES[report_name].format(start=start.isoformat(), end=end.isoformat())
            page_token = None
            while True:
                body: Dict[str, Any] = {"query": query}
                if page_token:
                    body["pageToken"] = page_token
                data = await self.client.call(
                    "POST", url, connection_details, options.actor,
                    account_key=customer_id, headers=headers, json=body,
                )
                if not isinstance(data, dict):
                    raise SchemaError(f"Unexpected search response for {report_name}")

                results = data.get("results", [])
                # Page sizes are fixed server side; split to the batch size
                for offset in range(0, len(results), options.batch_size):
                    yield [result_to_row(r) for r in results[offset:offset + options.batch_size]]

                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        return fetch
