"""
Meta Ads Connector.

Pulls daily insights (``time_increment=1``) at campaign, ad set and ad level
from the Marketing API, following ``paging.cursors.after``.
"""

import json
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

API_BASE = "https://graph.facebook.com/v22.0"

COMMON_FIELDS = ["impressions", "clicks", "spend", "reach", "cpc", "cpm", "ctr", "actions"]

REPORT_PRESETS: Dict[str, Dict[str, Any]] = {
    "campaign_insights": {
        "level": "campaign",
        "fields": ["campaign_id", "campaign_name", *COMMON_FIELDS],
    },
    "adset_insights": {
        "level": "adset",
        "fields": ["campaign_id", "adset_id", "adset_name", *COMMON_FIELDS],
    },
    "ad_insights": {
        "level": "ad",
        "fields": ["campaign_id", "adset_id", "ad_id", "ad_name", *COMMON_FIELDS],
    },
}

# Identifier fields stay strings even though they look numeric
ID_FIELDS = {"account_id", "campaign_id", "adset_id", "ad_id"}


class MetaAdsDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ad_account_id: str
    report_types: List[str] = Field(default_factory=lambda: ["campaign_insights"])
    page_size: int = Field(default=500, ge=1)

    @property
    def account_path(self) -> str:
        account = self.ad_account_id
        return account if account.startswith("act_") else f"act_{account}"


def insight_to_row(insight: Dict[str, Any]) -> Dict[str, Any]:
    row: Dict[str, Any] = {}
    for key, value in insight.items():
        if key == "date_start":
            row["date"] = parse_report_date(value)
        elif key == "date_stop":
            continue
        elif isinstance(value, (list, dict)):
            row[key] = json.dumps(value)
        elif key in ID_FIELDS:
            row[key] = value
        else:
            row[key] = to_number(value)
    return row


class MetaAdsConnector(BaseConnector):
    """Meta (Facebook) Ads insights connector."""

    data_types = (DataSourceType.META_ADS,)
    supports_watermark = True

    def __init__(self, services, http: Optional[ApiClient] = None):
        super().__init__(services)
        self.client = OAuthReportClient(self, DataSourceType.META_ADS.value, http)

    def _parse(self, connection_details: Dict[str, Any]) -> MetaAdsDetails:
        try:
            details = MetaAdsDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="meta_ads")
        unknown = [r for r in details.report_types if r not in REPORT_PRESETS]
        if unknown:
            raise SchemaError(f"Unknown Meta Ads report types: {', '.join(unknown)}")
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
        await ReportSync(self, DataSourceType.META_ADS).run(
            data_source_id, connection_details, options, reports
        )
        return SyncResult.from_progress(options.progress, time.time() - start_time)

    def _report_fetcher(self, details: MetaAdsDetails, connection_details: Dict[str, Any],
                        options: SyncOptions, report_name: str):
        preset = REPORT_PRESETS[report_name]
        url = f"{API_BASE}/{details.account_path}/insights"

        async def fetch(start: date, end: date) -> AsyncIterator[List[Dict[str, Any]]]:
            after = None
            while True:
                params = {
                    "level": preset["level"],
                    "fields": ",".join(preset["fields"]),
                    "time_range": json.dumps({"since": start.isoformat(), "until": end.isoformat()}),
                    "time_increment": 1,
                    "limit": min(details.page_size, options.batch_size),
                }
                if after:
                    params["after"] = after
                data = await self.client.call(
                    "GET", url, connection_details, options.actor,
                    account_key=details.account_path, params=params,
                )
                if not isinstance(data, dict) or not isinstance(data.get("data"), list):
                    raise SchemaError(f"Unexpected insights response for {report_name}")

                rows = [insight_to_row(item) for item in data["data"]]
                if rows:
                    yield rows

                paging = data.get("paging", {})
                after = paging.get("cursors", {}).get("after")
                if not paging.get("next") or not after:
                    break

        return fetch
