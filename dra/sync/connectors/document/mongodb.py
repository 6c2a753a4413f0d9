"""
MongoDB Connector.

Pulls collections through a batched pymongo cursor. Documents are
flattened into rows: nested keys are joined with ``_``, lists are stored as
JSON and ObjectIds as strings.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field
from pymongo import ASCENDING, MongoClient
from pymongo.errors import ConfigurationError, OperationFailure, PyMongoError

from dra.sync.connectors.base import (
    ActorContext,
    BaseConnector,
    SyncOptions,
    SyncResult,
    decode_watermark,
    high_water,
)
from dra.sync.errors import AuthError, FetchError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)


class MongoConnectionDetails(BaseModel):
    """Connection blob of a MongoDB data source."""
    model_config = ConfigDict(extra="ignore")

    connection_string: Optional[str] = None
    host: str = "localhost"
    port: int = Field(default=27017, ge=1, le=65535)
    database: str
    username: Optional[str] = None
    password: Optional[str] = None
    auth_source: str = "admin"
    collections: Optional[List[str]] = None
    incremental_field: str = "_id"
    server_selection_timeout_ms: int = Field(default=10000, ge=100)

    def client_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"serverSelectionTimeoutMS": self.server_selection_timeout_ms}
        if self.connection_string:
            kwargs["host"] = self.connection_string
        else:
            kwargs.update(host=self.host, port=self.port)
            if self.username:
                kwargs.update(username=self.username, password=self.password, authSource=self.auth_source)
        return kwargs


def flatten_document(document: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested documents into a single-level row."""
    row: Dict[str, Any] = {}
    for key, value in document.items():
        name = f"{prefix}_{key}" if prefix else str(key)
        if isinstance(value, dict):
            row.update(flatten_document(value, name))
        elif isinstance(value, ObjectId):
            row[name] = str(value)
        elif isinstance(value, list):
            row[name] = json.dumps(value, default=str)
        else:
            row[name] = value
    return row


class MongoDBConnector(BaseConnector):
    """
    MongoDB connector.

    Each collection becomes one table. Incremental sync reads documents whose
    ``incremental_field`` is greater than the stored high-water mark.
    """

    data_types = (DataSourceType.MONGODB,)
    supports_watermark = True

    def __init__(self, services, client_factory: Callable[..., Any] = None):
        super().__init__(services)
        self._client_factory = client_factory or MongoClient

    def _parse(self, connection_details: Dict[str, Any]) -> MongoConnectionDetails:
        try:
            return MongoConnectionDetails.model_validate(connection_details)
        except ValueError as e:
            raise AuthError(f"Invalid connection details: {e}", provider="mongodb")

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        details = self._parse(connection_details)
        client = self._client_factory(**details.client_kwargs())
        try:
            await asyncio.to_thread(self._ping, client, details)
            return True
        finally:
            client.close()

    @staticmethod
    def _ping(client, details: MongoConnectionDetails) -> None:
        try:
            client[details.database].command("ping")
        except (OperationFailure, ConfigurationError) as e:
            raise AuthError(str(e), provider="mongodb")
        except PyMongoError as e:
            raise FetchError(f"Cannot reach MongoDB: {e}")

    @staticmethod
    def _list_collections(client, details: MongoConnectionDetails) -> List[str]:
        if details.collections:
            return list(details.collections)
        names = client[details.database].list_collection_names()
        return sorted(name for name in names if not name.startswith("system."))

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        start_time = time.time()
        client = self._client_factory(**details.client_kwargs())

        try:
            await self._fetch_retry().execute(asyncio.to_thread, self._ping, client, details)
            try:
                collections = await asyncio.to_thread(self._list_collections, client, details)
            except PyMongoError as e:
                raise FetchError(f"Listing collections failed: {e}")

            for collection_name in collections:
                await self._sync_collection(client, details, data_source_id, collection_name, options)
        finally:
            client.close()

        return SyncResult.from_progress(options.progress, time.time() - start_time)

    @staticmethod
    def _batches(cursor, batch_size: int) -> Iterator[List[Dict[str, Any]]]:
        batch: List[Dict[str, Any]] = []
        for document in cursor:
            batch.append(document)
            if len(batch) >= batch_size:
                yield batch
                batch = []
        if batch:
            yield batch

    async def _sync_collection(self, client, details: MongoConnectionDetails, data_source_id: int,
                               collection_name: str, options: SyncOptions) -> None:
        options.cancel_token.raise_if_cancelled()

        field = details.incremental_field
        previous = decode_watermark(options.watermarks.get(collection_name))
        incremental = options.incremental and previous is not None
        query = {field: {"$gt": previous}} if incremental else {}

        try:
            cursor = (
                client[details.database][collection_name]
                .find(query)
                .sort(field, ASCENDING)
                .batch_size(options.batch_size)
            )
        except PyMongoError as e:
            raise FetchError(f"Query on {collection_name} failed: {e}")

        writer = self._writer(
            data_source_id, DataSourceType.MONGODB, collection_name, options,
            replace=not incremental, table_type="collection",
            checkpoint=True, watermark=previous if incremental else None,
        )
        batches = self._batches(cursor, options.batch_size)

        logger.info(
            f"Syncing collection {collection_name} for data source {data_source_id} "
            f"({'incremental' if incremental else 'full'})"
        )

        while True:
            try:
                documents = await asyncio.to_thread(next, batches, None)
            except PyMongoError as e:
                raise FetchError(f"Reading {collection_name} failed: {e}")
            if documents is None:
                break

            rows = []
            for document in documents:
                if not isinstance(document, dict):
                    raise SchemaError(f"Unexpected document type in {collection_name}: {type(document).__name__}")
                rows.append(flatten_document(document))

            writer.write(rows, high_water=high_water(documents, field))
            if writer.halted:
                break
            await self._yield_control()

        writer.finish()
