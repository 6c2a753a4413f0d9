"""
Unified Store Module.

Every connector writes into this store, and every data model query reads
from it. Tables live in per-source-type schemas and are created on demand
from the rows being written.
"""

import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import (
    BigInteger, Boolean, Column, Date, DateTime, Float, MetaData, Table, Text,
    delete, func, inspect, select, text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError
from sqlalchemy.types import String, TypeEngine

from dra.sync.errors import WriteError

logger = logging.getLogger(__name__)

MAX_IDENTIFIER_LENGTH = 63


def sanitize_identifier(name: Any) -> str:
    """Lowercase ``[a-z0-9_]`` identifier of at most 63 characters."""
    cleaned = re.sub(r'[^a-z0-9_]+', '_', str(name).strip().lower())
    cleaned = re.sub(r'_+', '_', cleaned).strip('_')
    if not cleaned:
        cleaned = "column"
    if cleaned[0].isdigit():
        cleaned = f"c_{cleaned}"
    return cleaned[:MAX_IDENTIFIER_LENGTH]


def infer_column_type(values: Iterable[Any]) -> TypeEngine:
    """Pick a column type able to hold every non-null value."""
    kinds = set()
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            kinds.add("bool")
        elif isinstance(value, int):
            kinds.add("int")
        elif isinstance(value, (float, Decimal)):
            kinds.add("float")
        elif isinstance(value, datetime):
            kinds.add("datetime")
        elif isinstance(value, date):
            kinds.add("date")
        else:
            kinds.add("text")

    if kinds == {"bool"}:
        return Boolean()
    if kinds == {"int"}:
        return BigInteger()
    if kinds and kinds <= {"int", "float"}:
        return Float()
    if kinds == {"datetime"}:
        return DateTime()
    if kinds == {"date"}:
        return Date()
    return Text()


def _is_text_type(column_type: TypeEngine) -> bool:
    return isinstance(column_type, (String, Text))


def _coerce(value: Any, column_type: Optional[TypeEngine]) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, sort_keys=True)
    if isinstance(value, Decimal):
        value = float(value)
    if column_type is not None and _is_text_type(column_type) and not isinstance(value, str):
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return str(value)
    return value


def normalize_rows(rows: Sequence[Dict[str, Any]]) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Sanitize row keys and give every row the same key set.

    Returns the ordered column list (first appearance order) and the
    normalized rows.
    """
    columns: List[str] = []
    key_map: Dict[str, str] = {}
    for row in rows:
        for key in row.keys():
            if key in key_map:
                continue
            name = sanitize_identifier(key)
            candidate, suffix = name, 2
            while candidate in columns:
                candidate = f"{name[:MAX_IDENTIFIER_LENGTH - len(str(suffix)) - 1]}_{suffix}"
                suffix += 1
            key_map[key] = candidate
            columns.append(candidate)

    normalized = []
    for row in rows:
        item = dict.fromkeys(columns)
        for key, value in row.items():
            item[key_map[key]] = value
        normalized.append(item)
    return columns, normalized


class UnifiedStore:
    """
    Table-level persistence over SQLAlchemy Core.

    All methods are synchronous and open their own transaction; callers
    never hold a connection across an await.
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self._reflected: Dict[Tuple[str, str], Table] = {}

    @property
    def dialect(self):
        return self.engine.dialect

    def qualified_name(self, schema: str, table: str) -> str:
        preparer = self.engine.dialect.identifier_preparer
        return f"{preparer.quote_schema(schema)}.{preparer.quote(table)}"

    # ------------------------------------------------------------------
    # Schema helpers
    # ------------------------------------------------------------------

    def ensure_schema(self, schema: str) -> None:
        """Make sure the schema exists."""
        with self.engine.begin() as conn:
            if self.engine.dialect.name == "sqlite":
                attached = {row[1] for row in conn.exec_driver_sql("PRAGMA database_list")}
                if schema not in attached:
                    raise WriteError(f"Schema '{schema}' is not attached to the SQLite store")
            else:
                conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {self.engine.dialect.identifier_preparer.quote_schema(schema)}"))

    def table_exists(self, schema: str, table: str) -> bool:
        with self.engine.connect() as conn:
            return inspect(conn).has_table(table, schema=schema)

    def get_columns(self, schema: str, table: str) -> List[Dict[str, str]]:
        """Column names and SQL types of a stored table."""
        with self.engine.connect() as conn:
            table_obj = self._reflect(conn, schema, table)
            if table_obj is None:
                return []
            return [{"name": c.name, "type": str(c.type)} for c in table_obj.columns]

    def _reflect(self, conn: Connection, schema: str, table: str) -> Optional[Table]:
        key = (schema, table)
        if key in self._reflected:
            return self._reflected[key]
        try:
            table_obj = Table(table, MetaData(), schema=schema, autoload_with=conn)
        except NoSuchTableError:
            return None
        self._reflected[key] = table_obj
        return table_obj

    def _build_table(self, schema: str, table: str, column_types: Dict[str, TypeEngine]) -> Table:
        return Table(
            table, MetaData(),
            *[Column(name, column_type) for name, column_type in column_types.items()],
            schema=schema,
        )

    def _add_missing_columns(self, conn: Connection, table_obj: Table, columns: List[str],
                             rows: List[Dict[str, Any]]) -> Table:
        missing = [c for c in columns if c not in table_obj.c]
        if not missing:
            return table_obj
        qualified = self.qualified_name(table_obj.schema, table_obj.name)
        preparer = conn.dialect.identifier_preparer
        for name in missing:
            column_type = infer_column_type(row.get(name) for row in rows)
            conn.execute(text(
                f"ALTER TABLE {qualified} ADD COLUMN {preparer.quote(name)} "
                f"{column_type.compile(dialect=conn.dialect)}"
            ))
            logger.info(f"Added column {name} to {qualified}")
        self._reflected.pop((table_obj.schema, table_obj.name), None)
        return self._reflect(conn, table_obj.schema, table_obj.name)

    @staticmethod
    def _prepare(table_obj: Table, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        types = {c.name: c.type for c in table_obj.columns}
        return [
            {name: _coerce(row.get(name), column_type) for name, column_type in types.items()}
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def replace_table(self, schema: str, table: str, rows: Sequence[Dict[str, Any]],
                      columns: Optional[Sequence[str]] = None) -> int:
        """
        Replace a table's content with ``rows`` in one transaction.

        Args:
            schema: Target schema
            table: Physical table name
            rows: Rows to write; keys are sanitized
            columns: Column names to use when ``rows`` is empty

        Returns:
            Number of rows written
        """
        names, normalized = normalize_rows(rows)
        if not names:
            names = [sanitize_identifier(c) for c in (columns or [])]
        if not names:
            raise WriteError(f"Cannot create {schema}.{table} without columns")

        column_types = {name: infer_column_type(row.get(name) for row in normalized) for name in names}
        table_obj = self._build_table(schema, table, column_types)

        try:
            with self.engine.begin() as conn:
                table_obj.drop(conn, checkfirst=True)
                table_obj.create(conn)
                if normalized:
                    conn.execute(table_obj.insert(), self._prepare(table_obj, normalized))
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to replace {schema}.{table}: {e}") from e
        finally:
            self._reflected.pop((schema, table), None)

        logger.debug(f"Replaced {schema}.{table} with {len(normalized)} rows")
        return len(normalized)

    def insert_rows(self, schema: str, table: str, rows: Sequence[Dict[str, Any]]) -> int:
        """Append rows, creating the table or adding new columns as needed."""
        if not rows:
            return 0
        names, normalized = normalize_rows(rows)

        try:
            with self.engine.begin() as conn:
                table_obj = self._reflect(conn, schema, table)
                if table_obj is None:
                    column_types = {
                        name: infer_column_type(row.get(name) for row in normalized) for name in names
                    }
                    table_obj = self._build_table(schema, table, column_types)
                    table_obj.create(conn)
                    self._reflected[(schema, table)] = table_obj
                else:
                    table_obj = self._add_missing_columns(conn, table_obj, names, normalized)
                conn.execute(table_obj.insert(), self._prepare(table_obj, normalized))
        except SQLAlchemyError as e:
            self._reflected.pop((schema, table), None)
            raise WriteError(f"Failed to insert into {schema}.{table}: {e}") from e

        return len(normalized)

    def delete_rows(self, schema: str, table: str, column: str, min_value: Any) -> int:
        """Delete rows whose ``column`` is greater than or equal to ``min_value``."""
        try:
            with self.engine.begin() as conn:
                table_obj = self._reflect(conn, schema, table)
                if table_obj is None or column not in table_obj.c:
                    return 0
                target = table_obj.c[column]
                value = _coerce(min_value, target.type)
                result = conn.execute(delete(table_obj).where(target >= value))
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to delete from {schema}.{table}: {e}") from e

    def drop_table(self, schema: str, table: str) -> None:
        try:
            with self.engine.begin() as conn:
                Table(table, MetaData(), schema=schema).drop(conn, checkfirst=True)
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to drop {schema}.{table}: {e}") from e
        finally:
            self._reflected.pop((schema, table), None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Execute one statement with named bound parameters."""
        with self.engine.connect() as conn:
            result = conn.execute(text(sql), params or {})
            return [dict(row._mapping) for row in result]

    def count_rows(self, schema: str, table: str) -> int:
        """Row count, 0 when the table does not exist."""
        with self.engine.connect() as conn:
            table_obj = self._reflect(conn, schema, table)
            if table_obj is None:
                return 0
            return conn.execute(select(func.count()).select_from(table_obj)).scalar() or 0

    def fetch_all(self, schema: str, table: str) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            table_obj = self._reflect(conn, schema, table)
            if table_obj is None:
                return []
            return [dict(row._mapping) for row in conn.execute(select(table_obj))]
