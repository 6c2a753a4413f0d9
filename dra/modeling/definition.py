"""
Data model definition.

Declarative shape of a data model: one base table, optional joins, a
column list and query options (WHERE, GROUP BY with aggregates and HAVING,
ORDER BY, LIMIT, OFFSET).
"""

from enum import Enum
from typing import Any, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class JoinType(str, Enum):
    INNER = "INNER"
    LEFT = "LEFT"
    RIGHT = "RIGHT"
    FULL = "FULL"


class AggregateFunction(str, Enum):
    SUM = "SUM"
    AVG = "AVG"
    COUNT = "COUNT"
    MIN = "MIN"
    MAX = "MAX"


class SortDirection(str, Enum):
    ASC = "ASC"
    DESC = "DESC"


OPERATORS = ("=", "!=", "IN", "NOT IN", "BETWEEN", ">", "<", ">=", "<=")
LIST_OPERATORS = ("IN", "NOT IN")


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class TableRef(_Strict):
    """A table of a data source, by physical or logical name."""
    data_source_id: int
    table: str = Field(min_length=1)
    schema_name: Optional[str] = Field(default=None, alias="schema")
    alias: Optional[str] = None

    @property
    def reference(self) -> str:
        """Name other clauses use to refer to this table."""
        return self.alias or self.table


class JoinCondition(_Strict):
    left_column: str
    right_column: str


class JoinSpec(_Strict):
    table: TableRef
    join_type: JoinType = JoinType.INNER
    on: List[JoinCondition] = Field(min_length=1)

    @field_validator("join_type", mode="before")
    @classmethod
    def _upper_join_type(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class ColumnSpec(_Strict):
    """A selected column; ``table`` is a table reference, the base table when omitted."""
    column: str
    table: Optional[str] = None
    alias: Optional[str] = None

    @property
    def qualified(self) -> str:
        return f"{self.table}.{self.column}" if self.table else self.column


class Condition(_Strict):
    column: str
    operator: str = "="
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = " ".join(value.upper().split())
            value = "!=" if value == "<>" else value
        if value not in OPERATORS:
            raise ValueError(f"unsupported operator '{value}', expected one of {', '.join(OPERATORS)}")
        return value

    @model_validator(mode="after")
    def _check_value_shape(self) -> "Condition":
        if self.operator in LIST_OPERATORS:
            if not isinstance(self.value, (list, tuple)) or not self.value:
                raise ValueError(f"{self.operator} needs a non-empty list value")
        elif self.operator == "BETWEEN":
            if not isinstance(self.value, (list, tuple)) or len(self.value) != 2:
                raise ValueError("BETWEEN needs a [low, high] value")
        elif isinstance(self.value, (list, tuple, dict)):
            raise ValueError(f"{self.operator} needs a scalar value")
        return self


class AggregateSpec(_Strict):
    function: AggregateFunction
    column: str
    use_distinct: bool = False
    alias: Optional[str] = None

    @field_validator("function", mode="before")
    @classmethod
    def _upper_function(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_star(self) -> "AggregateSpec":
        if self.column == "*" and (self.function != AggregateFunction.COUNT or self.use_distinct):
            raise ValueError("'*' is only valid for COUNT without DISTINCT")
        return self

    @property
    def output_name(self) -> str:
        if self.alias:
            return self.alias
        column = "all" if self.column == "*" else self.column.split(".")[-1]
        return f"{self.function.value.lower()}_{column}"


class GroupBySpec(_Strict):
    group_by_columns: List[str] = Field(default_factory=list)
    aggregate_functions: List[AggregateSpec] = Field(default_factory=list)
    having: List[Condition] = Field(default_factory=list)


class OrderBySpec(_Strict):
    column: str
    direction: SortDirection = SortDirection.ASC

    @field_validator("direction", mode="before")
    @classmethod
    def _upper_direction(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class QueryOptions(_Strict):
    where: List[Condition] = Field(default_factory=list)
    group_by: Optional[GroupBySpec] = None
    order_by: List[OrderBySpec] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=0)
    offset: Optional[int] = Field(default=None, ge=0)

    @field_validator("group_by", mode="before")
    @classmethod
    def _aggregate_list_shorthand(cls, value: Any) -> Any:
        # A bare list is the aggregate list
        if isinstance(value, list):
            return {"aggregate_functions": value}
        return value


class DataModelDefinition(_Strict):
    """Complete definition stored in ``DataModel.definition``."""
    base_table: TableRef
    joins: List[JoinSpec] = Field(default_factory=list)
    columns: List[ColumnSpec] = Field(default_factory=list)
    query_options: QueryOptions = Field(default_factory=QueryOptions)

    @model_validator(mode="after")
    def _unique_table_references(self) -> "DataModelDefinition":
        seen: Set[str] = set()
        for ref in [self.base_table, *(j.table for j in self.joins)]:
            if ref.reference in seen:
                raise ValueError(f"table reference '{ref.reference}' is used twice; give one an alias")
            seen.add(ref.reference)
        return self

    @property
    def aggregates(self) -> List[AggregateSpec]:
        group_by = self.query_options.group_by
        return list(group_by.aggregate_functions) if group_by else []

    def referenced_data_sources(self) -> Set[int]:
        return {self.base_table.data_source_id, *(j.table.data_source_id for j in self.joins)}
