"""
Error taxonomy for sync, refresh and query compilation.
"""

from typing import Optional


class DRAError(Exception):
    """Base exception for engine errors."""

    code = "error"
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class AuthError(DRAError):
    """Credentials are invalid, expired or revoked. Not retried automatically."""

    code = "auth_error"

    def __init__(self, message: str, provider: Optional[str] = None):
        self.provider = provider
        super().__init__(message)

    def __str__(self):
        if self.provider:
            return f"Authentication failed ({self.provider}): {self.message}"
        return f"Authentication failed: {self.message}"


class RateLimitExceeded(DRAError):
    """A rate limiter slot could not be acquired in time."""

    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class FetchError(DRAError):
    """Network or upstream API failure while fetching rows."""

    code = "fetch_error"

    def __init__(self, message: str, retryable: bool = True, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        self.retryable = retryable
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(message)


class SchemaError(DRAError):
    """Upstream data has an unexpected shape."""

    code = "schema_error"


class WriteError(DRAError):
    """Persisting rows into the unified store failed."""

    code = "write_error"


class SyncInProgress(DRAError):
    """Another sync holds the data source lock."""

    code = "sync_in_progress"

    def __init__(self, data_source_id: int):
        self.data_source_id = data_source_id
        super().__init__(f"Sync already in progress for data source {data_source_id}")


class RefreshInProgress(DRAError):
    """Another refresh holds the data model lock."""

    code = "refresh_in_progress"

    def __init__(self, data_model_id: int):
        self.data_model_id = data_model_id
        super().__init__(f"Refresh already in progress for data model {data_model_id}")


class Cancelled(DRAError):
    """The job was cancelled at a batch boundary."""

    code = "cancelled"

    def __init__(self, message: str = "cancelled"):
        super().__init__(message)


class JobTimeout(DRAError):
    """The job exceeded its time budget."""

    code = "timeout"
    retryable = True


class QueryCompileError(DRAError):
    """A data model definition cannot be compiled."""

    code = "compile_error"


class InvalidQueryDefinition(QueryCompileError):
    """The definition is structurally invalid (operator, aggregate, values)."""


class UnknownTableError(QueryCompileError):
    """A referenced table is not registered in table metadata."""

    def __init__(self, table: str, data_source_id: Optional[int] = None):
        self.table = table
        self.data_source_id = data_source_id
        super().__init__(f"Unknown table '{table}' for data source {data_source_id}")


class AmbiguousTableError(QueryCompileError):
    """A logical table name matches more than one physical table."""

    def __init__(self, table: str, candidates: list):
        self.table = table
        self.candidates = candidates
        super().__init__(f"Table '{table}' is ambiguous: {', '.join(candidates)}")


class UnknownColumnError(QueryCompileError):
    """A referenced column does not exist on the resolved table."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Unknown column '{identifier}'")


class NotFoundError(DRAError):
    """A referenced data source or data model does not exist."""

    code = "not_found"

    def __init__(self, entity_type: str, entity_id: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.replace('_', ' ').capitalize()} {entity_id} not found")
