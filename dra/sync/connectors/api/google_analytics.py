"""
Google Analytics 4 Connector.

Runs preset reports through the Analytics Data API ``runReport`` method,
paging with limit/offset. One table per report type, one row per day and
dimension combination.
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

API_BASE = "https://analyticsdata.googleapis.com/v1beta"

REPORT_PRESETS: Dict[str, Dict[str, List[str]]] = {
    "traffic_overview": {
        "dimensions": ["date", "sessionDefaultChannelGroup"],
        "metrics": ["sessions", "totalUsers", "newUsers", "screenPageViews", "bounceRate", "averageSessionDuration"],
    },
    "page_performance": {
        "dimensions": ["date", "pagePath"],
        "metrics": ["screenPageViews", "totalUsers", "averageSessionDuration"],
    },
    "geographic": {
        "dimensions": ["date", "country", "city"],
        "metrics": ["totalUsers", "sessions"],
    },
    "device": {
        "dimensions": ["date", "deviceCategory", "operatingSystem"],
        "metrics": ["totalUsers", "sessions"],
    },
}


class GoogleAnalyticsDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    property_id: str
    report_types: List[str] = Field(default_factory=lambda: ["traffic_overview"])
    page_size: int = Field(default=10000, ge=1, le=250000)


class GoogleAnalyticsConnector(BaseConnector):
    """GA4 reporting connector."""

    data_types = (DataSourceType.GOOGLE_ANALYTICS,)
    supports_watermark = True

    def __init__(self, services, http: Optional[ApiClient] = None):
        super().__init__(services)
        self.client = OAuthReportClient(self, DataSourceType.GOOGLE_ANALYTICS.value, http)

    def _parse(self, connection_details: Dict[str, Any]) -> GoogleAnalyticsDetails:
        try:
            details = GoogleAnalyticsDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="google_analytics")
        unknown = [r for r in details.report_types if r not in REPORT_PRESETS]
        if unknown:
            raise SchemaError(f"Unknown Google Analytics report types: {', '.join(unknown)}")
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
        await ReportSync(self, DataSourceType.GOOGLE_ANALYTICS).run(
            data_source_id, connection_details, options, reports
        )
        return SyncResult.from_progress(options.progress, time.time() - start_time)

    def _report_fetcher(self, details: GoogleAnalyticsDetails, connection_details: Dict[str, Any],
                        options: SyncOptions, report_name: str):
        preset = REPORT_PRESETS[report_name]
        url = f"{API_BASE}/properties/{details.property_id}:runReport"
        page_size = min(details.page_size, options.batch_size)

        async def fetch(start: date, end: date) -> AsyncIterator[List[Dict[str, Any]]]:
            offset = 0
            while True:
                body = {
                    "dateRanges": [{"startDate": start.isoformat(), "endDate": end.isoformat()}],
                    "dimensions": [{"name": d} for d in preset["dimensions"]],
                    "metrics": [{"name": m} for m in preset["metrics"]],
                    "orderBys": [{"dimension": {"dimensionName": "date"}}],
                    "limit": page_size,
                    "offset": offset,
                }
                data = await self.client.call(
                    "POST", url, connection_details, options.actor,
                    account_key=details.property_id, json=body,
                )
                rows = self._parse_rows(data, report_name)
                if rows:
                    yield rows
                offset += len(rows)
                if not rows or offset >= int(data.get("rowCount", 0)):
                    break

        return fetch

    @staticmethod
    def _parse_rows(data: Any, report_name: str) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            raise SchemaError(f"Unexpected runReport response for {report_name}")
        dimensions = [h["name"] for h in data.get("dimensionHeaders", [])]
        metrics = [h["name"] for h in data.get("metricHeaders", [])]

        rows = []
        for item in data.get("rows", []):
            dimension_values = item.get("dimensionValues", [])
            metric_values = item.get("metricValues", [])
            if len(dimension_values) != len(dimensions) or len(metric_values) != len(metrics):
                raise SchemaError(f"Row shape does not match headers in {report_name}")
            row: Dict[str, Any] = {}
            for name, value in zip(dimensions, dimension_values):
                row[name] = parse_report_date(value["value"]) if name == "date" else value.get("value")
            for name, value in zip(metrics, metric_values):
                row[name] = to_number(value.get("value"))
            rows.append(row)
        return rows
