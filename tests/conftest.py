"""
Shared fixtures: an in-memory SQLite database with every internal schema
attached, and the collaborators connectors and services are built from.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from dra.config.settings import DatabaseSettings, RateLimitSettings, RefreshSettings, SyncSettings
from dra.database.connection import INTERNAL_SCHEMAS, DatabaseManager
from dra.sync.connectors.api.oauth import ApiClient, ApiResponse, OAuthToken, TokenProvider
from dra.sync.connectors.base import CancellationToken, ConnectorServices
from dra.sync.gateway.rate_limiter import RateLimitConfig, RateLimiterRegistry
from dra.sync.history.refresh_history import RefreshHistoryStore
from dra.sync.history.sync_history import SyncHistoryStore
from dra.sync.metadata.table_metadata import TableMetadataRegistry
from dra.sync.models import DataModelModel, DataSourceModel, DataSourceType, utc_now
from dra.sync.store.leases import LeaseManager
from dra.sync.store.unified_store import UnifiedStore
from dra.system.metrics import EngineMetrics


API_PROVIDERS = ("google_analytics", "google_ads", "google_ad_manager", "meta_ads", "linkedin_ads", "hubspot",
                 "klaviyo")


class StaticTokenProvider(TokenProvider):
    """Hands out a fixed token and records expiry reports."""

    def __init__(self, access_token: str = "test-token"):
        self.access_token = access_token
        self.expired_reports: List[str] = []

    async def get_valid_token(self, user_id, project_id, provider, connection_details=None):
        return OAuthToken(access_token=self.access_token)

    async def report_expired(self, user_id, project_id, provider):
        self.expired_reports.append(provider)


class CountdownToken(CancellationToken):
    """Cancels itself on the first check after ``checks`` checks have passed."""

    def __init__(self, checks: int):
        super().__init__()
        self.remaining = checks

    def raise_if_cancelled(self) -> None:
        if self.remaining == 0:
            self.cancel("stopped by user")
        self.remaining -= 1
        super().raise_if_cancelled()


class FakeApiClient(ApiClient):
    """
    Scripted HTTP transport.

    ``responses`` maps (method, url) to a list of ApiResponse objects served
    in order; the last one repeats.
    """

    def __init__(self, responses: Optional[Dict[tuple, List[ApiResponse]]] = None):
        self.responses = responses or {}
        self.requests: List[Dict[str, Any]] = []

    def add(self, method: str, url: str, *responses: ApiResponse) -> None:
        self.responses.setdefault((method, url), []).extend(responses)

    async def request(self, method, url, *, headers=None, params=None, json=None, data=None):
        self.requests.append({
            "method": method, "url": url, "headers": headers, "params": params, "json": json, "data": data,
        })
        queue = self.responses.get((method, url))
        if not queue:
            return ApiResponse(status=404, data={"error": f"no response scripted for {method} {url}"})
        return queue.pop(0) if len(queue) > 1 else queue[0]


@pytest.fixture
def schemas():
    # SQLite attaches at most ten databases per connection by default
    return tuple(s for s in INTERNAL_SCHEMAS if s not in ("dra_linkedin_ads", "dra_hubspot", "dra_klaviyo"))


@pytest.fixture
def database(schemas):
    manager = DatabaseManager(DatabaseSettings(database_url="sqlite://"), schemas=schemas)
    manager.create_all()
    yield manager
    manager.close()


@pytest.fixture
def session_factory(database):
    return database.get_session_factory()


@pytest.fixture
def store(database):
    return UnifiedStore(database.get_engine())


@pytest.fixture
def metadata(session_factory):
    return TableMetadataRegistry(session_factory)


@pytest.fixture
def sync_history(session_factory):
    return SyncHistoryStore(session_factory)


@pytest.fixture
def refresh_history(session_factory):
    return RefreshHistoryStore(session_factory)


@pytest.fixture
def leases(session_factory):
    return LeaseManager(session_factory)


@pytest.fixture
def metrics():
    return EngineMetrics()


@pytest.fixture
def sync_settings():
    return SyncSettings(
        batch_size=1000,
        worker_count=2,
        job_timeout_seconds=10.0,
        job_max_attempts=3,
        job_retry_base_delay=0.0,
        lease_ttl_seconds=600,
        fetch_max_attempts=3,
        fetch_base_delay=0.0,
        fetch_max_delay=0.0,
        default_lookback_days=3,
    )


@pytest.fixture
def refresh_settings():
    return RefreshSettings(
        scheduler_interval_seconds=0.05,
        default_refresh_interval_minutes=60,
        query_timeout_seconds=10.0,
        models_schema="dra_data_models",
    )


@pytest.fixture
def rate_limiters():
    registry = RateLimiterRegistry(RateLimitSettings(
        max_requests=10000, window_ms=1000, burst_size=None, min_interval_ms=0, acquire_timeout_seconds=5.0,
    ))
    for provider in API_PROVIDERS:
        registry.configure(provider, RateLimitConfig(max_requests=10000, window_ms=1000))
    return registry


@pytest.fixture
def token_provider():
    return StaticTokenProvider()


@pytest.fixture
def cancel_after():
    """Builds a token that cancels on the first check after the given number."""
    return CountdownToken


@pytest.fixture
def http():
    return FakeApiClient()


@pytest.fixture
def services(store, metadata, sync_history, rate_limiters, sync_settings, token_provider):
    return ConnectorServices(
        store=store,
        metadata=metadata,
        history=sync_history,
        rate_limiters=rate_limiters,
        settings=sync_settings,
        token_provider=token_provider,
    )


@pytest.fixture
def make_data_source(session_factory):
    def _make(data_type: DataSourceType = DataSourceType.MONGODB,
              connection_details: Optional[Dict[str, Any]] = None, **fields) -> int:
        session = session_factory()
        try:
            source = DataSourceModel(
                name=fields.pop("name", f"{data_type.value} source"),
                data_type=data_type,
                connection_details=connection_details or {},
                user_id=fields.pop("user_id", 1),
                project_id=fields.pop("project_id", 1),
                **fields,
            )
            session.add(source)
            session.commit()
            return source.id
        finally:
            session.close()
    return _make


@pytest.fixture
def make_data_model(session_factory):
    def _make(data_source_id: int, definition: Dict[str, Any], **fields) -> int:
        session = session_factory()
        try:
            model = DataModelModel(
                name=fields.pop("name", "model"),
                data_source_id=data_source_id,
                definition=definition,
                project_id=fields.pop("project_id", 1),
                **fields,
            )
            session.add(model)
            session.commit()
            return model.id
        finally:
            session.close()
    return _make


def hours_ago(hours: float) -> datetime:
    return utc_now() - timedelta(hours=hours)
