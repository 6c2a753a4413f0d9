"""
Spreadsheet Connector.

One-shot parse of an uploaded Excel workbook or CSV file. Every sheet
becomes one table whose logical name is the sheet name.
"""

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import pandas as pd
from pydantic import BaseModel, ConfigDict

from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.errors import FetchError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)


class FileConnectionDetails(BaseModel):
    """Connection blob of an uploaded file data source."""
    model_config = ConfigDict(extra="ignore")

    file_path: str
    file_id: Optional[str] = None
    sheets: Optional[List[str]] = None
    encoding: str = "utf-8"
    delimiter: str = ","

    @property
    def resolved_file_id(self) -> str:
        return self.file_id or os.path.basename(self.file_path)


def dataframe_rows(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """DataFrame to row dicts with NaN/NaT mapped to None."""
    frame = frame.astype(object).where(pd.notna(frame), None)
    rows = frame.to_dict(orient="records")
    for row in rows:
        for key, value in row.items():
            if isinstance(value, pd.Timestamp):
                row[key] = value.to_pydatetime()
    return rows


class SpreadsheetConnector(BaseConnector):
    """Excel and CSV uploads; always full sync."""

    data_types = (DataSourceType.EXCEL, DataSourceType.CSV)
    supports_watermark = False

    def _parse(self, connection_details: Dict[str, Any]) -> FileConnectionDetails:
        try:
            return FileConnectionDetails.model_validate(connection_details)
        except ValueError as e:
            raise SchemaError(f"Invalid file connection details: {e}")

    async def authenticate(self, connection_details: Dict[str, Any],
                           actor: Optional[ActorContext] = None) -> bool:
        details = self._parse(connection_details)
        if not os.path.isfile(details.file_path):
            raise FetchError(f"Uploaded file not found: {details.file_path}", retryable=False)
        return True

    @staticmethod
    def _read(details: FileConnectionDetails, data_type: DataSourceType) -> Dict[str, pd.DataFrame]:
        if data_type == DataSourceType.CSV or details.file_path.lower().endswith(".csv"):
            frame = pd.read_csv(details.file_path, encoding=details.encoding, sep=details.delimiter)
            sheet = os.path.splitext(os.path.basename(details.file_path))[0]
            return {sheet: frame}
        return pd.read_excel(details.file_path, sheet_name=details.sheets or None)

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        data_type = DataSourceType(connection_details.get("data_type", DataSourceType.EXCEL.value))
        start_time = time.time()

        try:
            sheets = await asyncio.to_thread(self._read, details, data_type)
        except FileNotFoundError as e:
            raise FetchError(f"Uploaded file not found: {e}", retryable=False)
        except (ValueError, pd.errors.ParserError) as e:
            raise SchemaError(f"Cannot parse {details.file_path}: {e}")

        for sheet_name, frame in sheets.items():
            options.cancel_token.raise_if_cancelled()
            if len(frame.columns) == 0:
                logger.warning(f"Skipping sheet {sheet_name}: no columns")
                continue

            writer = self._writer(
                data_source_id, data_type, str(sheet_name), options, replace=True,
                table_type="csv_file" if data_type == DataSourceType.CSV else "excel_sheet",
                file_id=details.resolved_file_id,
                original_sheet_name=str(sheet_name),
            )
            rows = dataframe_rows(frame)
            for offset in range(0, len(rows), options.batch_size):
                writer.write(rows[offset:offset + options.batch_size])
                await self._yield_control()
            writer.finish(columns=[str(c) for c in frame.columns])

            logger.info(f"Synced sheet {sheet_name} ({len(rows)} rows) for data source {data_source_id}")

        return SyncResult.from_progress(options.progress, time.time() - start_time)
