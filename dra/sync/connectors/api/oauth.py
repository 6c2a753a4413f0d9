"""
OAuth API plumbing shared by the marketing API connectors.

- TokenProvider: narrow interface to the OAuth token store
- ApiClient: HTTP transport (aiohttp by default)
- OAuthReportClient: rate-limited, retried, authenticated requests
- ApiKeyClient: the same for providers using a static API key
- ReportSync: runs day-granular report fetchers into the unified store
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import aiohttp

from dra.sync.connectors.base import (
    ActorContext, BaseConnector, SyncOptions, decode_watermark, encode_watermark, max_watermark,
)
from dra.sync.errors import AuthError, FetchError
from dra.sync.models import DataSourceType, utc_now

logger = logging.getLogger(__name__)


TOKEN_URLS = {
    "google": "https://oauth2.googleapis.com/token",
    "meta": "https://graph.facebook.com/v22.0/oauth/access_token",
    "linkedin": "https://www.linkedin.com/oauth/v2/accessToken",
    "hubspot": "https://api.hubapi.com/oauth/v1/token",
}

_FAMILIES = {
    DataSourceType.META_ADS.value: "meta",
    DataSourceType.LINKEDIN_ADS.value: "linkedin",
    DataSourceType.HUBSPOT.value: "hubspot",
}


def provider_family(provider: str) -> str:
    return _FAMILIES.get(provider, "google")


# ============================================================================
# Tokens
# ============================================================================

@dataclass
class OAuthToken:
    """Access token with optional refresh token and expiry."""
    access_token: str
    expires_at: Optional[datetime] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"

    def is_expired(self, skew_seconds: int = 60) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= utc_now() + timedelta(seconds=skew_seconds)


class TokenProvider(ABC):
    """Supplies valid tokens keyed by (user_id, project_id, provider)."""

    @abstractmethod
    async def get_valid_token(self, user_id: Optional[int], project_id: Optional[int], provider: str,
                              connection_details: Optional[Dict[str, Any]] = None) -> OAuthToken:
        """Return a non-expired token, refreshing it when needed."""

    @abstractmethod
    async def report_expired(self, user_id: Optional[int], project_id: Optional[int], provider: str) -> None:
        """The upstream API rejected the token; refresh before next use."""


# ============================================================================
# HTTP transport
# ============================================================================

@dataclass
class ApiResponse:
    status: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)


class ApiClient(ABC):
    """Minimal async HTTP interface."""

    @abstractmethod
    async def request(self, method: str, url: str, *, headers: Optional[Dict[str, str]] = None,
                      params: Optional[Dict[str, Any]] = None, json: Any = None,
                      data: Optional[Dict[str, Any]] = None) -> ApiResponse:
        pass


class AiohttpApiClient(ApiClient):
    """ApiClient over aiohttp with a total request timeout."""

    def __init__(self, timeout_seconds: float = 60.0, connect_timeout: float = 10.0):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds, connect=connect_timeout)

    async def request(self, method: str, url: str, *, headers: Optional[Dict[str, str]] = None,
                      params: Optional[Dict[str, Any]] = None, json: Any = None,
                      data: Optional[Dict[str, Any]] = None) -> ApiResponse:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.request(
                    method=method, url=url, headers=headers, params=params, json=json, data=data
                ) as response:
                    content_type = response.headers.get("Content-Type", "")
                    if "json" in content_type:
                        body = await response.json(content_type=None)
                    else:
                        body = await response.text()
                    return ApiResponse(status=response.status, data=body, headers=dict(response.headers))
        except asyncio.TimeoutError:
            raise FetchError(f"{method} {url} timed out")
        except aiohttp.ClientError as e:
            raise FetchError(f"{method} {url} failed: {e}")


class ConnectionDetailsTokenProvider(TokenProvider):
    """
    Tokens kept in the data source connection details.

    Expired tokens are exchanged with the provider's token endpoint using the
    refresh token (Google, LinkedIn, HubSpot) or the long-lived token
    exchange (Meta).
    """

    def __init__(self, http: Optional[ApiClient] = None, client_id: Optional[str] = None,
                 client_secret: Optional[str] = None):
        self._http = http or AiohttpApiClient()
        self._client_id = client_id
        self._client_secret = client_secret
        self._cache: Dict[Tuple[Optional[int], Optional[int], str], OAuthToken] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _token_from_details(connection_details: Dict[str, Any]) -> Optional[OAuthToken]:
        access_token = connection_details.get("access_token")
        refresh_token = connection_details.get("refresh_token")
        if not access_token and not refresh_token:
            return None
        expiry = connection_details.get("token_expiry")
        expires_at = None
        if isinstance(expiry, (int, float)):
            # Epoch seconds or milliseconds
            seconds = expiry / 1000 if expiry > 1e11 else expiry
            expires_at = datetime.fromtimestamp(seconds, timezone.utc).replace(tzinfo=None)
        elif isinstance(expiry, str) and expiry:
            expires_at = datetime.fromisoformat(expiry.replace("Z", "+00:00")).replace(tzinfo=None)
        return OAuthToken(
            access_token=access_token or "",
            refresh_token=refresh_token,
            expires_at=expires_at if access_token else utc_now(),
        )

    async def get_valid_token(self, user_id: Optional[int], project_id: Optional[int], provider: str,
                              connection_details: Optional[Dict[str, Any]] = None) -> OAuthToken:
        key = (user_id, project_id, provider)
        async with self._lock:
            token = self._cache.get(key) or self._token_from_details(connection_details or {})
            if token is None:
                raise AuthError("No OAuth token available", provider=provider)
            if token.is_expired():
                token = await self._exchange(provider, token, connection_details or {})
            self._cache[key] = token
            return token

    async def report_expired(self, user_id: Optional[int], project_id: Optional[int], provider: str) -> None:
        token = self._cache.get((user_id, project_id, provider))
        if token is not None:
            token.expires_at = utc_now() - timedelta(seconds=1)
        logger.info(f"Token for {provider} (user {user_id}, project {project_id}) reported expired")

    async def _exchange(self, provider: str, token: OAuthToken, connection_details: Dict[str, Any]) -> OAuthToken:
        family = provider_family(provider)
        client_id = connection_details.get("client_id") or self._client_id
        client_secret = connection_details.get("client_secret") or self._client_secret

        if family == "meta":
            if not token.access_token:
                raise AuthError("Meta access token missing", provider=provider)
            payload = {
                "grant_type": "fb_exchange_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "fb_exchange_token": token.access_token,
            }
            response = await self._http.request("GET", TOKEN_URLS[family], params=payload)
        else:
            if not token.refresh_token:
                raise AuthError("Access token expired and no refresh token is stored", provider=provider)
            payload = {
                "grant_type": "refresh_token",
                "refresh_token": token.refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            }
            response = await self._http.request("POST", TOKEN_URLS[family], data=payload)

        if response.status in (400, 401, 403):
            raise AuthError(f"Token refresh rejected ({response.status})", provider=provider)
        if response.status >= 300 or not isinstance(response.data, dict):
            raise FetchError(f"Token refresh failed with status {response.status}", status_code=response.status)

        expires_in = response.data.get("expires_in")
        logger.info(f"Refreshed {provider} access token")
        return OAuthToken(
            access_token=response.data["access_token"],
            refresh_token=response.data.get("refresh_token", token.refresh_token),
            expires_at=utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None,
        )


# ============================================================================
# Authenticated requests
# ============================================================================

class OAuthReportClient:
    """
    Issues provider API requests.

    Every attempt acquires the account's rate limiter slot and a valid token.
    429 and 5xx responses raise retryable FetchErrors; the first 401/403
    reports the token expired and retries once, a second one is an AuthError.
    """

    def __init__(self, connector: BaseConnector, provider: str, http: Optional[ApiClient] = None):
        self._connector = connector
        self.provider = provider
        self._http = http or AiohttpApiClient(connector.services.settings.http_timeout_seconds)

    @property
    def token_provider(self) -> TokenProvider:
        provider = self._connector.services.token_provider
        if provider is None:
            raise AuthError("No token provider configured", provider=self.provider)
        return provider

    async def token(self, connection_details: Dict[str, Any], actor: ActorContext) -> OAuthToken:
        return await self.token_provider.get_valid_token(
            actor.user_id, actor.project_id, self.provider, connection_details
        )

    async def authorization(self, connection_details: Dict[str, Any], actor: ActorContext) -> str:
        """Authorization header value for the next attempt."""
        token = await self.token(connection_details, actor)
        return f"{token.token_type} {token.access_token}"

    async def _rejected(self, actor: ActorContext, failures: int, message: str, status: int) -> None:
        await self.token_provider.report_expired(actor.user_id, actor.project_id, self.provider)
        if failures > 1:
            raise AuthError(message, provider=self.provider)
        raise FetchError(f"{message}, refreshing token", status_code=status)

    async def call(self, method: str, url: str, connection_details: Dict[str, Any], actor: ActorContext,
                   account_key: str, headers: Optional[Dict[str, str]] = None,
                   params: Optional[Dict[str, Any]] = None, json: Any = None) -> Any:
        limiter = self._connector.services.rate_limiters.get(self.provider, account_key)
        auth_failures = 0

        async def _attempt():
            nonlocal auth_failures
            await limiter.acquire()
            authorization = await self.authorization(connection_details, actor)
            request_headers = {"Authorization": authorization, **(headers or {})}
            response = await self._http.request(method, url, headers=request_headers, params=params, json=json)

            if response.status in (401, 403):
                auth_failures += 1
                await self._rejected(actor, auth_failures, f"{method} {url} rejected with {response.status}",
                                     response.status)
            if response.status == 429:
                retry_after = response.headers.get("Retry-After")
                raise FetchError(
                    f"{method} {url} throttled by provider", status_code=429,
                    retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                )
            if response.status >= 500:
                raise FetchError(f"{method} {url} failed with {response.status}", status_code=response.status)
            if response.status >= 400:
                raise FetchError(
                    f"{method} {url} failed with {response.status}: {response.data}",
                    retryable=False, status_code=response.status,
                )
            return response.data

        return await self._connector._fetch_retry().execute(_attempt)


class ApiKeyClient(OAuthReportClient):
    """
    OAuthReportClient for providers authenticated with a private API key.

    The key is read from ``connection_details[key_field]``. A rejected key is
    an AuthError on the first 401/403; there is no token to refresh.
    """

    def __init__(self, connector: BaseConnector, provider: str, scheme: str, key_field: str = "api_key",
                 http: Optional[ApiClient] = None):
        super().__init__(connector, provider, http)
        self.scheme = scheme
        self.key_field = key_field

    async def authorization(self, connection_details: Dict[str, Any], actor: ActorContext) -> str:
        key = connection_details.get(self.key_field)
        if not key:
            raise AuthError(f"Connection details have no {self.key_field}", provider=self.provider)
        return f"{self.scheme} {key}"

    async def _rejected(self, actor: ActorContext, failures: int, message: str, status: int) -> None:
        raise AuthError(message, provider=self.provider)


# ============================================================================
# Day-granular report sync
# ============================================================================

ReportFetcher = Callable[[date, date], AsyncIterator[List[Dict[str, Any]]]]


def compute_date_range(connection_details: Dict[str, Any], options: SyncOptions, report_name: str,
                       lookback_days: int, today: Optional[date] = None) -> Tuple[Optional[date], date, bool]:
    """
    Date window to fetch for a report.

    Only complete days are synced (the window ends yesterday). Incremental
    windows start the day after the stored watermark, minus
    ``restate_days`` that are deleted and fetched again.

    Returns:
        (start, end, incremental); start is None when nothing is due
    """
    today = today or utc_now().date()
    end = today - timedelta(days=1)
    restate_days = int(connection_details.get("restate_days", 0))
    previous = decode_watermark(options.watermarks.get(report_name))

    if options.incremental and previous is not None:
        start = previous + timedelta(days=1) - timedelta(days=restate_days)
        incremental = True
    else:
        configured = connection_details.get("start_date")
        start = date.fromisoformat(configured) if configured else end - timedelta(days=lookback_days - 1)
        incremental = False

    if start > end:
        return None, end, incremental
    return start, end, incremental


class ReportSync:
    """Runs report fetchers for one data source and writes their rows."""

    def __init__(self, connector: BaseConnector, data_type: DataSourceType):
        self._connector = connector
        self.data_type = data_type

    async def run(self, data_source_id: int, connection_details: Dict[str, Any], options: SyncOptions,
                  reports: Dict[str, ReportFetcher], date_column: str = "date") -> None:
        lookback = int(connection_details.get("lookback_days", self._connector.services.settings.default_lookback_days))
        store = self._connector.services.store

        for report_name, fetch in reports.items():
            options.cancel_token.raise_if_cancelled()
            start, end, incremental = compute_date_range(connection_details, options, report_name, lookback)
            if start is None:
                logger.info(f"Report {report_name} for data source {data_source_id} is up to date")
                continue

            writer = self._connector._writer(
                data_source_id, self.data_type, report_name, options,
                replace=not incremental, table_type="api_report"
            )
            if incremental:
                # Clears restated days and anything an interrupted run left in the window
                store.delete_rows(writer.schema_name, writer.physical_table_name, date_column, start)

            watermark = decode_watermark(options.watermarks.get(report_name))
            async for rows in fetch(start, end):
                writer.write(rows)
                for row in rows:
                    value = row.get(date_column)
                    if isinstance(value, str):
                        value = date.fromisoformat(value[:10])
                    watermark = max_watermark(watermark, value)

            writer.finish()
            if writer.batches_failed:
                logger.warning(
                    f"Report {report_name} for data source {data_source_id} had failed batches; "
                    f"the next sync fetches from {start.isoformat()} again"
                )
            elif watermark is not None:
                options.progress.watermarks[report_name] = encode_watermark(watermark)
            logger.info(
                f"Report {report_name} synced {writer.rows_written} rows "
                f"for {start.isoformat()}..{end.isoformat()}"
            )


def to_number(value: Any) -> Any:
    """Numeric strings from report APIs to int or float; anything else unchanged."""
    if not isinstance(value, str):
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def parse_report_date(value: Any) -> Any:
    """``YYYYMMDD`` or ``YYYY-MM-DD`` to a date."""
    text = str(value)
    if len(text) == 8 and text.isdigit():
        return date(int(text[:4]), int(text[4:6]), int(text[6:]))
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return value
