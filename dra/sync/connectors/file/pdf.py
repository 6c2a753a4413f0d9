"""
PDF Connector.

Extracts text from an uploaded PDF with pypdf, one row per non-empty line.
"""

import asyncio
import logging
import os
import time
from typing import Any, Dict, List, Optional

import pypdf
from pypdf.errors import PdfReadError

from dra.sync.connectors.base import ActorContext, BaseConnector, SyncOptions, SyncResult
from dra.sync.connectors.file.spreadsheet import FileConnectionDetails
from dra.sync.errors import FetchError, SchemaError
from dra.sync.models import DataSourceType

logger = logging.getLogger(__name__)

PDF_COLUMNS = ["page", "line", "text"]


def extract_lines(file_path: str) -> List[Dict[str, Any]]:
    """Rows of {page, line, text} for every non-empty line."""
    rows = []
    with open(file_path, "rb") as pdf_file:
        reader = pypdf.PdfReader(pdf_file)
        for page_number, page in enumerate(reader.pages, start=1):
            text = page.extract_text() or ""
            line_number = 0
            for line in text.splitlines():
                line = line.strip()
                if not line:
                    continue
                line_number += 1
                rows.append({"page": page_number, "line": line_number, "text": line})
    return rows


class PDFConnector(BaseConnector):
    """PDF uploads; always full sync."""

    data_types = (DataSourceType.PDF,)
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

    async def sync_to_database(self, data_source_id: int, connection_details: Dict[str, Any],
                               options: SyncOptions) -> SyncResult:
        details = self._parse(connection_details)
        start_time = time.time()

        try:
            rows = await asyncio.to_thread(extract_lines, details.file_path)
        except FileNotFoundError as e:
            raise FetchError(f"Uploaded file not found: {e}", retryable=False)
        except PdfReadError as e:
            raise SchemaError(f"Cannot read PDF {details.file_path}: {e}")

        logical_name = os.path.splitext(os.path.basename(details.file_path))[0]
        writer = self._writer(
            data_source_id, DataSourceType.PDF, logical_name, options, replace=True,
            table_type="pdf_text", file_id=details.resolved_file_id,
        )
        for offset in range(0, len(rows), options.batch_size):
            writer.write(rows[offset:offset + options.batch_size])
            await self._yield_control()
        writer.finish(columns=PDF_COLUMNS)

        return SyncResult.from_progress(options.progress, time.time() - start_time)
