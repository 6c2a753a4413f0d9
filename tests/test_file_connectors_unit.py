"""
Unit tests for the file connectors (Excel, CSV and PDF uploads).
"""

from unittest.mock import patch

import pandas as pd
import pypdf
import pytest

from dra.sync.connectors.base import SyncOptions
from dra.sync.connectors.file.pdf import PDFConnector, extract_lines
from dra.sync.connectors.file.spreadsheet import SpreadsheetConnector, dataframe_rows
from dra.sync.errors import FetchError
from dra.sync.metadata.table_metadata import generate_physical_table_name
from dra.sync.models import DataSourceType


@pytest.fixture
def csv_file(tmp_path):
    path = tmp_path / "customers.csv"
    path.write_text("id,name,city\n1,Alice,Paris\n2,Bob,\n3,Cleo,Lyon\n")
    return path


@pytest.fixture
def workbook(tmp_path):
    path = tmp_path / "report.xlsx"
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        pd.DataFrame({"region": ["north", "south"], "revenue": [100.5, 80.0]}).to_excel(
            writer, sheet_name="Revenue", index=False
        )
        pd.DataFrame({"sku": ["a", "b", "c"], "units": [1, 2, 3]}).to_excel(
            writer, sheet_name="Units", index=False
        )
        pd.DataFrame(columns=["note", "author"]).to_excel(writer, sheet_name="Notes", index=False)
    return path


class TestDataframeRows:
    """Tests for DataFrame conversion."""

    def test_missing_values_become_none(self):
        frame = pd.DataFrame({"a": [1.0, None], "b": ["x", None]})

        assert dataframe_rows(frame) == [{"a": 1.0, "b": "x"}, {"a": None, "b": None}]

    def test_timestamps_become_datetimes(self):
        frame = pd.DataFrame({"day": pd.to_datetime(["2024-01-01"])})

        value = dataframe_rows(frame)[0]["day"]

        assert not isinstance(value, pd.Timestamp)
        assert value.year == 2024


class TestSpreadsheetConnector:
    """Tests for Excel and CSV uploads."""

    @pytest.mark.asyncio
    async def test_csv_becomes_one_table(self, services, store, metadata, make_data_source, csv_file):
        ds = make_data_source(DataSourceType.CSV)
        connector = SpreadsheetConnector(services)

        result = await connector.sync_to_database(
            ds, {"file_path": str(csv_file), "data_type": "csv"}, SyncOptions()
        )

        assert result.records_processed == 3
        registered = metadata.list_for_data_source(ds)
        assert len(registered) == 1
        assert registered[0].logical_table_name == "customers"
        assert registered[0].table_type == "csv_file"
        assert registered[0].schema_name == "dra_excel"
        rows = sorted(store.fetch_all("dra_excel", registered[0].physical_table_name), key=lambda r: r["id"])
        assert rows[1] == {"id": 2, "name": "Bob", "city": None}

    @pytest.mark.asyncio
    async def test_physical_name_includes_file_id(self, services, metadata, make_data_source, csv_file):
        ds = make_data_source(DataSourceType.CSV)

        await SpreadsheetConnector(services).sync_to_database(
            ds, {"file_path": str(csv_file), "file_id": "upload-17", "data_type": "csv"}, SyncOptions()
        )

        registered = metadata.list_for_data_source(ds)[0]
        assert registered.physical_table_name == generate_physical_table_name(ds, "customers", "upload-17")
        assert registered.file_id == "upload-17"

    @pytest.mark.asyncio
    async def test_workbook_sheets_become_tables(self, services, store, metadata, make_data_source, workbook):
        ds = make_data_source(DataSourceType.EXCEL)

        result = await SpreadsheetConnector(services).sync_to_database(
            ds, {"file_path": str(workbook)}, SyncOptions(batch_size=2)
        )

        assert result.records_processed == 5
        by_name = {t.logical_table_name: t for t in metadata.list_for_data_source(ds)}
        assert set(by_name) == {"Revenue", "Units", "Notes"}
        assert by_name["Units"].original_sheet_name == "Units"
        assert by_name["Units"].table_type == "excel_sheet"
        assert store.count_rows("dra_excel", by_name["Units"].physical_table_name) == 3

    @pytest.mark.asyncio
    async def test_header_only_sheet_is_registered_empty(self, services, store, metadata, make_data_source,
                                                         workbook):
        ds = make_data_source(DataSourceType.EXCEL)

        await SpreadsheetConnector(services).sync_to_database(ds, {"file_path": str(workbook)}, SyncOptions())

        notes = next(t for t in metadata.list_for_data_source(ds) if t.logical_table_name == "Notes")
        assert [c["name"] for c in notes.columns] == ["note", "author"]
        assert store.count_rows("dra_excel", notes.physical_table_name) == 0

    @pytest.mark.asyncio
    async def test_selected_sheets_only(self, services, metadata, make_data_source, workbook):
        ds = make_data_source(DataSourceType.EXCEL)

        await SpreadsheetConnector(services).sync_to_database(
            ds, {"file_path": str(workbook), "sheets": ["Revenue"]}, SyncOptions()
        )

        assert [t.logical_table_name for t in metadata.list_for_data_source(ds)] == ["Revenue"]

    @pytest.mark.asyncio
    async def test_resync_replaces_rows(self, services, store, metadata, make_data_source, csv_file):
        ds = make_data_source(DataSourceType.CSV)
        connector = SpreadsheetConnector(services)
        details = {"file_path": str(csv_file), "data_type": "csv"}
        await connector.sync_to_database(ds, details, SyncOptions())

        csv_file.write_text("id,name,city\n9,Zoe,Nice\n")
        await connector.sync_to_database(ds, details, SyncOptions())

        physical = metadata.list_for_data_source(ds)[0].physical_table_name
        assert store.fetch_all("dra_excel", physical) == [{"id": 9, "name": "Zoe", "city": "Nice"}]

    @pytest.mark.asyncio
    async def test_missing_file(self, services, make_data_source, tmp_path):
        ds = make_data_source(DataSourceType.CSV)
        connector = SpreadsheetConnector(services)
        details = {"file_path": str(tmp_path / "gone.csv"), "data_type": "csv"}

        with pytest.raises(FetchError) as exc_info:
            await connector.sync_to_database(ds, details, SyncOptions())

        assert exc_info.value.retryable is False
        with pytest.raises(FetchError):
            await connector.authenticate(details)


class TestPDFConnector:
    """Tests for PDF uploads."""

    @pytest.mark.asyncio
    async def test_lines_become_rows(self, services, store, metadata, make_data_source, tmp_path):
        ds = make_data_source(DataSourceType.PDF)
        path = tmp_path / "invoice.pdf"
        path.write_bytes(b"%PDF-1.4")
        lines = [
            {"page": 1, "line": 1, "text": "Invoice 42"},
            {"page": 1, "line": 2, "text": "Total 99.00"},
            {"page": 2, "line": 1, "text": "Thank you"},
        ]

        with patch("dra.sync.connectors.file.pdf.extract_lines", return_value=lines):
            result = await PDFConnector(services).sync_to_database(ds, {"file_path": str(path)}, SyncOptions())

        assert result.records_processed == 3
        registered = metadata.list_for_data_source(ds)[0]
        assert registered.logical_table_name == "invoice"
        assert registered.table_type == "pdf_text"
        assert registered.schema_name == "dra_pdf"
        assert store.count_rows("dra_pdf", registered.physical_table_name) == 3

    @pytest.mark.asyncio
    async def test_blank_pdf_registers_empty_table(self, services, store, metadata, make_data_source, tmp_path):
        ds = make_data_source(DataSourceType.PDF)
        path = tmp_path / "blank.pdf"
        writer = pypdf.PdfWriter()
        writer.add_blank_page(width=200, height=200)
        with open(path, "wb") as f:
            writer.write(f)

        assert extract_lines(str(path)) == []

        result = await PDFConnector(services).sync_to_database(ds, {"file_path": str(path)}, SyncOptions())

        assert result.records_processed == 0
        registered = metadata.list_for_data_source(ds)[0]
        assert [c["name"] for c in registered.columns] == ["page", "line", "text"]
        assert store.count_rows("dra_pdf", registered.physical_table_name) == 0

    @pytest.mark.asyncio
    async def test_missing_pdf(self, services, make_data_source, tmp_path):
        ds = make_data_source(DataSourceType.PDF)

        with pytest.raises(FetchError):
            await PDFConnector(services).sync_to_database(
                ds, {"file_path": str(tmp_path / "nope.pdf")}, SyncOptions()
            )
