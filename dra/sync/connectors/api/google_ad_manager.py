"""
Google Ad Manager Connector.

Report flow against the Ad Manager REST API:
1. create a report definition for the date window
2. run it, which returns a long-running operation
3. poll the operation with exponential backoff until it is done
4. page through the result rows with fetchRows
"""

import asyncio
import logging
import time
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from dra.sync.connectors.api.oauth import (
    ApiClient, OAuthReportClient, ReportSync, parse_report_date, to_number,
)
from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.errors import AuthError, FetchError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)

API_BASE = "https://admanager.googleapis.com/v1"

REPORT_PRESETS: Dict[str, Dict[str, List[str]]] = {
    "revenue": {
        "dimensions": ["DATE", "AD_UNIT_ID", "AD_UNIT_NAME", "COUNTRY_CODE", "COUNTRY_NAME"],
        "metrics": [
            "TOTAL_LINE_ITEM_LEVEL_IMPRESSIONS", "TOTAL_LINE_ITEM_LEVEL_CLICKS",
            "TOTAL_LINE_ITEM_LEVEL_CPM_AND_CPC_REVENUE", "TOTAL_LINE_ITEM_LEVEL_CTR",
        ],
    },
    "inventory": {
        "dimensions": ["DATE", "AD_UNIT_ID", "AD_UNIT_NAME", "DEVICE_CATEGORY_NAME"],
        "metrics": ["TOTAL_AD_REQUESTS", "TOTAL_MATCHED_REQUESTS", "TOTAL_IMPRESSIONS"],
    },
    "orders": {
        "dimensions": [
            "DATE", "ORDER_ID", "ORDER_NAME", "LINE_ITEM_ID", "LINE_ITEM_NAME",
            "ADVERTISER_ID", "ADVERTISER_NAME",
        ],
        "metrics": [
            "TOTAL_LINE_ITEM_LEVEL_IMPRESSIONS", "TOTAL_LINE_ITEM_LEVEL_CLICKS",
            "TOTAL_LINE_ITEM_LEVEL_CPM_AND_CPC_REVENUE",
        ],
    },
    "geography": {
        "dimensions": ["DATE", "COUNTRY_CODE", "COUNTRY_NAME", "REGION_NAME", "CITY_NAME"],
        "metrics": [
            "TOTAL_LINE_ITEM_LEVEL_IMPRESSIONS", "TOTAL_LINE_ITEM_LEVEL_CLICKS",
            "TOTAL_LINE_ITEM_LEVEL_CPM_AND_CPC_REVENUE",
        ],
    },
    "device": {
        "dimensions": ["DATE", "DEVICE_CATEGORY_NAME", "BROWSER_NAME", "OPERATING_SYSTEM_NAME"],
        "metrics": [
            "TOTAL_LINE_ITEM_LEVEL_IMPRESSIONS", "TOTAL_LINE_ITEM_LEVEL_CLICKS",
            "TOTAL_LINE_ITEM_LEVEL_CPM_AND_CPC_REVENUE",
        ],
    },
}


class AdManagerDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    network_code: str
    report_types: List[str] = Field(default_factory=lambda: ["revenue"])
    poll_interval_seconds: float = Field(default=5.0, ge=0)
    max_poll_interval_seconds: float = Field(default=60.0, ge=0)
    report_timeout_seconds: float = Field(default=300.0, gt=0)
    page_size: int = Field(default=10000, ge=1)


def _date_value(value: date) -> Dict[str, int]:
    return {"year": value.year, "month": value.month, "day": value.day}


def _cell(value: Dict[str, Any]) -> Any:
    """Typed value cell of a result row."""
    for key in ("intValue", "doubleValue", "stringValue", "boolValue"):
        if key in value:
            return value[key]
    if "dateValue" in value:
        d = value["dateValue"]
        return date(d["year"], d["month"], d["day"])
    return None


def report_row(item: Dict[str, Any], dimensions: List[str], metrics: List[str]) -> Dict[str, Any]:
    dimension_values = item.get("dimensionValues", [])
    groups = item.get("metricValueGroups") or [{}]
    metric_values = groups[0].get("primaryValues", [])
    if len(dimension_values) != len(dimensions) or len(metric_values) != len(metrics):
        raise SchemaError("Ad Manager row shape does not match the report definition")

    row: Dict[str, Any] = {}
    for name, value in zip(dimensions, dimension_values):
        cell = _cell(value)
        row[name.lower()] = parse_report_date(cell) if name == "DATE" else cell
    for name, value in zip(metrics, metric_values):
        row[name.lower()] = to_number(_cell(value))
    return row


class GoogleAdManagerConnector(BaseConnector):
    """Google Ad Manager reporting connector."""

    data_types = (DataSourceType.GOOGLE_AD_MANAGER,)
    supports_watermark = True

    def __init__(self, services, http: Optional[ApiClient] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        super().__init__(services)
        self.client = OAuthReportClient(self, DataSourceType.GOOGLE_AD_MANAGER.value, http)
        self._sleep = sleep

    def _parse(self, connection_details: Dict[str, Any]) -> AdManagerDetails:
        try:
            details = AdManagerDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="google_ad_manager")
        unknown = [r for r in details.report_types if r not in REPORT_PRESETS]
        if unknown:
            raise SchemaError(f"Unknown Ad Manager report types: {', '.join(unknown)}")
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
        await ReportSync(self, DataSourceType.GOOGLE_AD_MANAGER).run(
            data_source_id, connection_details, options, reports
        )
        return SyncResult.from_progress(options.progress, time.time() - start_time)

    async def _request(self, method: str, path: str, details: AdManagerDetails,
                       connection_details: Dict[str, Any], options: SyncOptions, **kwargs) -> Dict[str, Any]:
        data = await self.client.call(
            method, f"{API_BASE}/{path}", connection_details, options.actor,
            account_key=details.network_code, **kwargs
        )
        if not isinstance(data, dict):
            raise SchemaError(f"Unexpected Ad Manager response for {path}")
        return data

    async def _wait_for_result(self, operation_name: str, details: AdManagerDetails,
                               connection_details: Dict[str, Any], options: SyncOptions) -> str:
        """Poll a report operation; returns the result resource name."""
        waited = 0.0
        attempt = 0
        while True:
            options.cancel_token.raise_if_cancelled()
            operation = await self._request("GET", operation_name, details, connection_details, options)
            if operation.get("done"):
                if "error" in operation:
                    message = operation["error"].get("message", "unknown error")
                    raise FetchError(f"Report generation failed: {message}", retryable=False)
                result = operation.get("response", {}).get("reportResult")
                if not result:
                    raise SchemaError("Finished report operation carries no result")
                return result

            if waited >= details.report_timeout_seconds:
                raise FetchError(f"Report generation timed out after {waited:.0f}s")
            delay = min(details.poll_interval_seconds * (2 ** attempt), details.max_poll_interval_seconds)
            logger.debug(f"Report operation {operation_name} pending, polling again in {delay}s")
            await self._sleep(delay)
            waited += delay
            attempt += 1

    def _report_fetcher(self, details: AdManagerDetails, connection_details: Dict[str, Any],
                        options: SyncOptions, report_name: str):
        preset = REPORT_PRESETS[report_name]
        network = f"networks/{details.network_code}"

        async def fetch(start: date, end: date) -> AsyncIterator[List[Dict[str, Any]]]:
            definition = {
                "displayName": f"dra_{report_name}_{start.isoformat()}_{end.isoformat()}",
                "reportDefinition": {
                    "dimensions": preset["dimensions"],
                    "metrics": preset["metrics"],
                    "dateRange": {"fixed": {"startDate": _date_value(start), "endDate": _date_value(end)}},
                    "reportType": "HISTORICAL",
                },
            }
            report = await self._request("POST", f"{network}/reports", details, connection_details, options,
                                         json=definition)
            operation = await self._request("POST", f"{report['name']}:run", details, connection_details,
                                            options, json={})
            result_name = await self._wait_for_result(operation["name"], details, connection_details, options)
            logger.info(f"Ad Manager report {report_name} ready: {result_name}")

            page_token = None
            while True:
                params: Dict[str, Any] = {"pageSize": min(details.page_size, options.batch_size)}
                if page_token:
                    params["pageToken"] = page_token
                page = await self._request("GET", f"{result_name}:fetchRows", details, connection_details,
                                           options, params=params)
                rows = [report_row(item, preset["dimensions"], preset["metrics"])
                        for item in page.get("rows", [])]
                if rows:
                    yield rows
                page_token = page.get("nextPageToken")
                if not page_token:
                    break

        return fetch
