"""
Join suggestions for tables without declared foreign keys.

Suggestions are inferred from column naming patterns between two tables of
one data source and cached in ``ai_join_suggestions`` together with a hash
of both tables' column snapshots. A changed schema invalidates the cache.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from dra.sync.metadata.table_metadata import TableMetadataRegistry
from dra.sync.models import AIJoinSuggestionModel, TableMetadataModel, utc_now

logger = logging.getLogger(__name__)

KEY_SUFFIXES = ("_id", "_key", "_code", "_uuid")
AUDIT_COLUMNS = {"id", "created_at", "updated_at"}


@dataclass
class JoinCandidate:
    """One inferred join between two columns."""
    left_column: str
    right_column: str
    confidence_score: float
    reasoning: str
    suggested_join_type: str = "INNER"
    matched_patterns: List[str] = field(default_factory=list)


def singular(name: str) -> str:
    name = name.lower()
    if name.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    if name.endswith("ses") or name.endswith("xes"):
        return name[:-2]
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def schema_hash(*tables: TableMetadataModel) -> str:
    """sha256 over the sorted table/column snapshots."""
    snapshot = sorted(
        (t.schema_name, t.physical_table_name, sorted((c["name"], c.get("type", "")) for c in (t.columns or [])))
        for t in tables
    )
    return hashlib.sha256(json.dumps(snapshot, sort_keys=True).encode("utf-8")).hexdigest()


def is_junction_table(table: TableMetadataModel) -> bool:
    """Two or more foreign-key-like columns and nothing else but audit columns."""
    names = [c["name"] for c in (table.columns or [])]
    keys = [n for n in names if n.endswith("_id")]
    others = [n for n in names if n not in keys and n not in AUDIT_COLUMNS]
    return len(keys) >= 2 and len(others) <= 1


def _types(table: TableMetadataModel) -> Dict[str, str]:
    return {c["name"]: (c.get("type") or "").upper() for c in (table.columns or [])}


def _is_key_like(name: str) -> bool:
    return name == "id" or name.endswith(KEY_SUFFIXES)


def infer_joins(left: TableMetadataModel, right: TableMetadataModel) -> List[JoinCandidate]:
    """
    Candidate joins from left to right, best first.

    Patterns:
        - ``<singular right table>_id`` on the left to ``id`` on the right (and the reverse)
        - the same ``*_id`` column on both sides
        - the same key-like column name on both sides
    A column type mismatch lowers the score.
    """
    left_types = _types(left)
    right_types = _types(right)
    left_name = singular(left.logical_table_name)
    right_name = singular(right.logical_table_name)
    found: Dict[Tuple[str, str], JoinCandidate] = {}

    def add(left_column: str, right_column: str, score: float, pattern: str, reasoning: str) -> None:
        if left_types.get(left_column) != right_types.get(right_column):
            score -= 0.2
            pattern_list = [pattern, "type_mismatch"]
        else:
            pattern_list = [pattern, "type_match"]
        score = round(max(score, 0.05), 2)
        key = (left_column, right_column)
        if key in found and found[key].confidence_score >= score:
            return
        found[key] = JoinCandidate(
            left_column=left_column,
            right_column=right_column,
            confidence_score=score,
            reasoning=reasoning,
            suggested_join_type="INNER" if score >= 0.7 else "LEFT",
            matched_patterns=pattern_list,
        )

    if "id" in right_types and f"{right_name}_id" in left_types:
        add(f"{right_name}_id", "id", 0.9, "id_suffix",
            f"{right_name}_id likely references {right.logical_table_name}.id")
    if "id" in left_types and f"{left_name}_id" in right_types:
        add("id", f"{left_name}_id", 0.9, "id_suffix",
            f"{right.logical_table_name}.{left_name}_id likely references {left.logical_table_name}.id")

    for name in left_types:
        if name not in right_types or name == "id":
            continue
        if name.endswith("_id"):
            add(name, name, 0.7, "shared_key", f"Both tables carry {name}")
        elif _is_key_like(name):
            add(name, name, 0.5, "exact_name_match", f"Key-like column {name} appears in both tables")

    return sorted(found.values(), key=lambda c: (-c.confidence_score, c.left_column, c.right_column))


class JoinSuggestionService:
    """Cached join suggestions per table pair."""

    def __init__(self, session_factory: sessionmaker, metadata: TableMetadataRegistry):
        self._session_factory = session_factory
        self.metadata = metadata

    def get_suggestions(self, data_source_id: int, left: str, right: str,
                        schema_name: Optional[str] = None) -> List[AIJoinSuggestionModel]:
        """
        Suggestions for joining ``left`` to ``right``.

        Args:
            data_source_id: Data source owning both tables
            left: Physical or logical name of the left table
            right: Physical or logical name of the right table
            schema_name: Restricts table resolution when given

        Returns:
            Suggestion rows, best first

        Raises:
            UnknownTableError, AmbiguousTableError: a table did not resolve
        """
        left_meta = self.metadata.resolve(data_source_id, left, schema_name)
        right_meta = self.metadata.resolve(data_source_id, right, schema_name)
        current_hash = schema_hash(left_meta, right_meta)

        pair = (
            AIJoinSuggestionModel.data_source_id == data_source_id,
            AIJoinSuggestionModel.left_table == left_meta.physical_table_name,
            AIJoinSuggestionModel.right_table == right_meta.physical_table_name,
        )
        with self._session_factory() as session:
            cached = list(session.execute(
                select(AIJoinSuggestionModel).where(*pair)
                .order_by(AIJoinSuggestionModel.confidence_score.desc(), AIJoinSuggestionModel.id)
            ).scalars())
        if cached and all(row.schema_hash == current_hash for row in cached):
            logger.debug(f"Join suggestions cache hit for {left_meta.physical_table_name} -> "
                         f"{right_meta.physical_table_name}")
            return cached

        candidates = infer_joins(left_meta, right_meta)
        junction = is_junction_table(left_meta) or is_junction_table(right_meta)

        session = self._session_factory()
        try:
            session.execute(delete(AIJoinSuggestionModel).where(*pair))
            rows = [
                AIJoinSuggestionModel(
                    data_source_id=data_source_id,
                    schema_hash=current_hash,
                    left_table=left_meta.physical_table_name,
                    left_column=c.left_column,
                    right_table=right_meta.physical_table_name,
                    right_column=c.right_column,
                    suggested_join_type=c.suggested_join_type,
                    confidence_score=c.confidence_score,
                    reasoning=c.reasoning,
                    is_junction_table=junction,
                    suggestion_metadata={
                        "matched_patterns": c.matched_patterns,
                        "left_logical": left_meta.logical_table_name,
                        "right_logical": right_meta.logical_table_name,
                    },
                    created_at=utc_now(),
                )
                for c in candidates
            ]
            session.add_all(rows)
            session.commit()
        finally:
            session.close()

        logger.info(
            f"Computed {len(rows)} join suggestions for data source {data_source_id}: "
            f"{left_meta.logical_table_name} -> {right_meta.logical_table_name}"
        )
        return rows
