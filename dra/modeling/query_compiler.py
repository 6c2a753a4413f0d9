"""
Data Model Query Compiler.

Compiles a DataModelDefinition into exactly one parameterized SELECT for the
unified store's dialect:

- tables resolve through TableMetadata (physical or logical name)
- columns are checked against the stored column snapshot
- WHERE and HAVING values are bound as ``p0``, ``p1``, ... in order
- aggregates follow the selected columns in declaration order, DISTINCT
  only inside the aggregate

The statement is built with SQLAlchemy Core and rendered with the named
paramstyle, so the same definition always yields the same SQL text.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Union

from pydantic import ValidationError
from sqlalchemy import and_, asc, bindparam, column, desc, func, literal_column, select, table
from sqlalchemy.engine import Dialect, Engine
from sqlalchemy.sql.elements import ColumnElement

from dra.modeling.definition import (
    AggregateFunction, AggregateSpec, Condition, DataModelDefinition, JoinType, SortDirection, TableRef,
)
from dra.sync.errors import InvalidQueryDefinition, UnknownColumnError
from dra.sync.metadata.table_metadata import TableMetadataRegistry

logger = logging.getLogger(__name__)

AGGREGATES = {
    AggregateFunction.SUM: func.sum,
    AggregateFunction.AVG: func.avg,
    AggregateFunction.COUNT: func.count,
    AggregateFunction.MIN: func.min,
    AggregateFunction.MAX: func.max,
}


@dataclass
class CompiledQuery:
    """One executable statement with its bound parameters."""
    sql: str
    params: Dict[str, Any] = field(default_factory=dict)
    output_columns: List[str] = field(default_factory=list)
    tables: List[str] = field(default_factory=list)


@dataclass
class _ResolvedTable:
    reference: str
    selectable: Any
    columns: List[str]
    qualified_name: str


def named_dialect(engine_or_dialect: Union[Engine, Dialect]) -> Dialect:
    """A copy of the engine's dialect rendering ``:name`` parameters."""
    dialect = getattr(engine_or_dialect, "dialect", engine_or_dialect)
    return type(dialect)(paramstyle="named")


def parse_definition(definition: Union[DataModelDefinition, Dict[str, Any]]) -> DataModelDefinition:
    if isinstance(definition, DataModelDefinition):
        return definition
    try:
        return DataModelDefinition.model_validate(definition or {})
    except ValidationError as e:
        raise InvalidQueryDefinition(f"Invalid data model definition: {e}")


class _Compilation:
    """State for compiling one definition."""

    def __init__(self, definition: DataModelDefinition, metadata: TableMetadataRegistry):
        self.definition = definition
        self.metadata = metadata
        self.tables: Dict[str, _ResolvedTable] = {}
        self.order: List[str] = []
        self.param_count = 0

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def add_table(self, ref: TableRef) -> _ResolvedTable:
        meta = self.metadata.resolve(ref.data_source_id, ref.table, ref.schema_name)
        columns = [c["name"] for c in (meta.columns or [])]
        base = table(meta.physical_table_name, *[column(name) for name in columns], schema=meta.schema_name)
        selectable = base.alias(ref.alias) if ref.alias else base
        resolved = _ResolvedTable(
            reference=ref.reference,
            selectable=selectable,
            columns=columns,
            qualified_name=f"{meta.schema_name}.{meta.physical_table_name}",
        )
        self.tables[ref.reference] = resolved
        self.order.append(ref.reference)
        return resolved

    def resolve_column(self, identifier: str) -> ColumnElement:
        """``column`` or ``table_reference.column`` to a column of a resolved table."""
        if "." in identifier:
            reference, name = identifier.rsplit(".", 1)
            resolved = self.tables.get(reference)
            if resolved is None or name not in resolved.columns:
                raise UnknownColumnError(identifier)
            return resolved.selectable.c[name]

        matches = [self.tables[ref] for ref in self.order if identifier in self.tables[ref].columns]
        if not matches:
            raise UnknownColumnError(identifier)
        # Unqualified names prefer the base table
        if len(matches) > 1 and matches[0].reference != self.order[0]:
            raise InvalidQueryDefinition(
                f"Column '{identifier}' exists in {', '.join(m.reference for m in matches)}; qualify it"
            )
        return matches[0].selectable.c[identifier]

    # ------------------------------------------------------------------
    # Predicates
    # ------------------------------------------------------------------

    def param(self, value: Any):
        name = f"p{self.param_count}"
        self.param_count += 1
        return bindparam(name, value=value)

    def predicate(self, target: ColumnElement, condition: Condition) -> ColumnElement:
        operator = condition.operator
        if operator == "=":
            return target == self.param(condition.value)
        if operator == "!=":
            return target != self.param(condition.value)
        if operator == ">":
            return target > self.param(condition.value)
        if operator == "<":
            return target < self.param(condition.value)
        if operator == ">=":
            return target >= self.param(condition.value)
        if operator == "<=":
            return target <= self.param(condition.value)
        if operator == "BETWEEN":
            low, high = condition.value
            return target.between(self.param(low), self.param(high))
        params = [self.param(v) for v in condition.value]
        if operator == "IN":
            return target.in_(params)
        return target.not_in(params)

    # ------------------------------------------------------------------
    # Statement
    # ------------------------------------------------------------------

    def aggregate(self, spec: AggregateSpec) -> ColumnElement:
        if spec.column == "*":
            return func.count(literal_column("*"))
        argument = self.resolve_column(spec.column)
        if spec.use_distinct:
            argument = argument.distinct()
        return AGGREGATES[spec.function](argument)

    def build(self):
        definition = self.definition
        options = definition.query_options

        base = self.add_table(definition.base_table)
        from_clause = base.selectable
        for join in definition.joins:
            right = self.add_table(join.table)
            condition = and_(*[
                self.resolve_column(c.left_column) == self.resolve_column(c.right_column)
                for c in join.on
            ])
            if join.join_type == JoinType.INNER:
                from_clause = from_clause.join(right.selectable, condition)
            elif join.join_type == JoinType.LEFT:
                from_clause = from_clause.outerjoin(right.selectable, condition)
            elif join.join_type == JoinType.RIGHT:
                # RIGHT JOIN is LEFT JOIN with the sides swapped
                from_clause = right.selectable.outerjoin(from_clause, condition)
            else:
                from_clause = from_clause.outerjoin(right.selectable, condition, full=True)

        group_by = options.group_by
        aggregates = definition.aggregates

        # Selected (non-aggregate) columns
        selected: List[Tuple[str, ColumnElement]] = []
        if definition.columns:
            for spec in definition.columns:
                selected.append((spec.alias or spec.column, self.resolve_column(spec.qualified)))
        elif group_by and group_by.group_by_columns:
            for identifier in group_by.group_by_columns:
                selected.append((identifier.split(".")[-1], self.resolve_column(identifier)))
        elif not aggregates:
            selected = [(name, base.selectable.c[name]) for name in base.columns]
            if not selected:
                raise InvalidQueryDefinition(f"Table '{base.reference}' has no known columns")

        outputs: Dict[str, ColumnElement] = {}
        labelled = []
        for name, expression in selected:
            if name in outputs:
                raise InvalidQueryDefinition(f"Duplicate output column '{name}'")
            outputs[name] = expression
            labelled.append(expression.label(name))

        aggregate_outputs: Dict[str, ColumnElement] = {}
        for spec in aggregates:
            name = spec.output_name
            if name in outputs or name in aggregate_outputs:
                raise InvalidQueryDefinition(f"Duplicate output column '{name}'")
            expression = self.aggregate(spec)
            aggregate_outputs[name] = expression
            labelled.append(expression.label(name))

        statement = select(*labelled).select_from(from_clause)

        if options.where:
            statement = statement.where(and_(*[
                self.predicate(self.resolve_column(c.column), c) for c in options.where
            ]))

        grouping: List[ColumnElement] = []
        if group_by and group_by.group_by_columns:
            grouping = [self.resolve_column(c) for c in group_by.group_by_columns]
            grouped = {id(g) for g in grouping}
            missing = [name for name, expression in selected if id(expression) not in grouped]
            if missing:
                raise InvalidQueryDefinition(
                    f"Non-aggregated columns must appear in group_by_columns: {', '.join(missing)}"
                )
        elif aggregates:
            grouping = [expression for _, expression in selected]
        if grouping:
            statement = statement.group_by(*grouping)

        if group_by and group_by.having:
            if not grouping and not aggregates:
                raise InvalidQueryDefinition("HAVING needs GROUP BY or aggregates")
            conditions = []
            for condition in group_by.having:
                target = aggregate_outputs.get(condition.column)
                if target is None:
                    target = self.resolve_column(condition.column)
                conditions.append(self.predicate(target, condition))
            statement = statement.having(and_(*conditions))

        for order in options.order_by:
            if order.column in outputs or order.column in aggregate_outputs:
                # Label reference, rendered as the output name
                target = order.column
            else:
                target = self.resolve_column(order.column)
            statement = statement.order_by(desc(target) if order.direction == SortDirection.DESC else asc(target))

        # Validated non-negative integers, rendered inline so only filter values are bound
        if options.limit is not None:
            statement = statement.limit(literal_column(str(int(options.limit))))
        if options.offset is not None:
            statement = statement.offset(literal_column(str(int(options.offset))))

        output_columns = [name for name, _ in selected] + list(aggregate_outputs)
        tables = [self.tables[ref].qualified_name for ref in self.order]
        return statement, output_columns, tables


class QueryCompiler:
    """Compiles data model definitions for one store dialect."""

    def __init__(self, metadata: TableMetadataRegistry, engine_or_dialect: Union[Engine, Dialect]):
        self.metadata = metadata
        self.dialect = named_dialect(engine_or_dialect)

    def compile(self, definition: Union[DataModelDefinition, Dict[str, Any]]) -> CompiledQuery:
        """
        Compile a definition into one statement.

        Raises:
            InvalidQueryDefinition: malformed definition
            UnknownTableError, AmbiguousTableError: table resolution failed
            UnknownColumnError: a referenced column does not exist
        """
        parsed = parse_definition(definition)
        statement, output_columns, tables = _Compilation(parsed, self.metadata).build()
        compiled = statement.compile(dialect=self.dialect)

        params = dict(compiled.params)
        logger.debug(f"Compiled data model query over {', '.join(tables)}")
        return CompiledQuery(
            sql=str(compiled),
            params=params,
            output_columns=output_columns,
            tables=tables,
        )
