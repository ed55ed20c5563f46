"""Staging area: intermediate tables between source and target."""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.schema import CreateSchema

from ..adapters.sql import SqlAdapter
from ..errors import ConfigurationError
from ..models.execution import StagingConfig
from ..models.schema import (
    ColumnMapping,
    EngineType,
    TableInfo,
    TransformationConfig,
    TransformationType,
)
from ..services.transformer import SqlType, TransformEngine, is_text_type
from ..services.type_matrix import is_valid_type_name, resolve_column_type, text_type_for

logger = logging.getLogger(__name__)

# Prefix of the staging columns that hold transformed values
OUTPUT_PREFIX = "_xf_"

_UNSAFE_CHARACTERS = re.compile(r"[^A-Za-z0-9_]")

# These transformations must see NULL sources
_NULL_AWARE = {TransformationType.DEFAULT_VALUE, TransformationType.CONCATENATE}

# Output columns that keep the staged source column's type
_SAME_TYPE = {
    TransformationType.DEFAULT_VALUE,
    TransformationType.UPPERCASE,
    TransformationType.LOWERCASE,
    TransformationType.TRIM,
    TransformationType.REPLACE,
}


@dataclass
class StagedTable:
    """Definition of one staging table and what was staged into it."""
    source_table: str
    name: str
    schema: Optional[str]
    columns: List[Tuple[str, str]]
    key_column: Optional[str] = None
    # target column -> staging column holding its transformed value
    outputs: Dict[str, str] = field(default_factory=dict)
    rows_staged: int = 0
    transform_failed: bool = False
    _table: Optional[sa.Table] = field(default=None, repr=False, compare=False)

    def table(self) -> sa.Table:
        if self._table is None:
            self._table = sa.Table(
                self.name,
                sa.MetaData(),
                *[sa.Column(name, SqlType(type_name)) for name, type_name in self.columns],
                schema=self.schema,
            )
        return self._table

    @property
    def source_columns(self) -> List[str]:
        outputs = set(self.outputs.values())
        return [name for name, _ in self.columns if name not in outputs]

    def column_type(self, name: str) -> Optional[str]:
        for column, type_name in self.columns:
            if column == name:
                return type_name
        return None

    def load_column(self, mapping: ColumnMapping) -> str:
        """Staging column whose value lands in the mapping's target column."""
        return self.outputs.get(mapping.target_column, mapping.source_column)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "name": self.name,
            "schema": self.schema,
            "columns": [{"name": n, "type": t} for n, t in self.columns],
            "key_column": self.key_column,
            "outputs": dict(self.outputs),
            "rows_staged": self.rows_staged,
        }


class StagingArea:
    """
    Creates, fills and transforms staging tables.

    Every statement is built with SQLAlchemy Core, so identifiers are
    quoted by the dialect and values travel as bound parameters.
    """

    def __init__(self, adapter: SqlAdapter, config: StagingConfig):
        self.adapter = adapter
        self.config = config

    @property
    def engine(self):
        return self.adapter.engine

    @property
    def engine_type(self) -> EngineType:
        return self.adapter.engine_type

    @property
    def schema(self) -> Optional[str]:
        return self.config.schema_name or None

    def ensure_schema(self) -> None:
        """
        Make sure the staging schema exists.

        Raises:
            ConfigurationError: if it is missing and auto_create is off
        """
        if not self.schema:
            return
        with self.engine.begin() as conn:
            if self.schema in sa.inspect(conn).get_schema_names():
                return
            if not self.config.auto_create:
                raise ConfigurationError(
                    f"Staging schema {self.schema} does not exist and auto_create is disabled"
                )
            conn.execute(CreateSchema(self.schema))
        logger.info(f"Created staging schema {self.schema}")

    def table_name(self, source_table: str) -> str:
        return f"{self.config.table_prefix}{_UNSAFE_CHARACTERS.sub('_', source_table)}"

    def define(
        self,
        source_table: str,
        info: Optional[TableInfo],
        source_engine: EngineType,
        column_mappings: List[ColumnMapping]
    ) -> StagedTable:
        """
        Derive the staging table for a source table.

        Source columns get their type through the compatibility matrix;
        each transformed mapping adds an output column.
        """
        columns: List[Tuple[str, str]] = []
        seen = set()
        for column in (info.columns if info else []):
            columns.append((column.name, resolve_column_type(source_engine, self.engine_type, column)))
            seen.add(column.name)

        # Mapped columns absent from the sample document are staged as text
        for mapping in column_mappings:
            referenced = [mapping.source_column]
            if mapping.transformation and mapping.transformation.type == TransformationType.CONCATENATE:
                referenced.extend(mapping.transformation.parameters.get("columns", []))
            for name in referenced:
                if name not in seen:
                    columns.append((name, text_type_for(self.engine_type)))
                    seen.add(name)

        staged = StagedTable(
            source_table=source_table,
            name=self.table_name(source_table),
            schema=self.schema,
            columns=columns,
            key_column=info.primary_key if info else None,
        )

        for mapping in column_mappings:
            if not mapping.is_transformed:
                continue
            output = f"{OUTPUT_PREFIX}{mapping.target_column}"
            staged.columns.append((output, self._output_type(mapping, staged)))
            staged.outputs[mapping.target_column] = output

        return staged

    def _output_type(self, mapping: ColumnMapping, staged: StagedTable) -> str:
        config = mapping.transformation
        if config.type == TransformationType.TYPE_CONVERSION:
            return str(config.parameters["target_type"]).strip()
        if config.type in _SAME_TYPE:
            return staged.column_type(mapping.source_column) or text_type_for(self.engine_type)
        if config.type == TransformationType.CUSTOM_EXPRESSION and is_valid_type_name(mapping.target_type):
            return mapping.target_type
        return text_type_for(self.engine_type)

    def create(self, staged: StagedTable) -> None:
        """Create the staging table, or empty it if it already has the same columns."""
        table = staged.table()
        with self.engine.begin() as conn:
            inspector = sa.inspect(conn)
            if inspector.has_table(staged.name, schema=staged.schema):
                existing = {c["name"] for c in inspector.get_columns(staged.name, schema=staged.schema)}
                if existing == {name for name, _ in staged.columns}:
                    conn.execute(sa.delete(table))
                    logger.debug(f"Truncated staging table {staged.name}")
                    return
                table.drop(conn)
            table.create(conn)
        logger.debug(f"Created staging table {staged.name}")

    def prepare(self, staged: StagedTable, batch: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Shape source rows to the staging columns."""
        rows = []
        for source_row in batch:
            row = {}
            for name in staged.source_columns:
                value = source_row.get(name)
                if isinstance(value, (dict, list)):
                    value = json.dumps(value, default=str)
                row[name] = value
            rows.append(row)
        return rows

    def insert(self, staged: StagedTable, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        with self.engine.begin() as conn:
            conn.execute(sa.insert(staged.table()), rows)
        return len(rows)

    def count(self, staged: StagedTable) -> int:
        query = sa.select(sa.func.count()).select_from(staged.table())
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def stream(self, query, batch_size: int) -> Iterator[List[Dict[str, Any]]]:
        """Stream the result of a query over staging tables in batches."""
        with self.engine.connect() as conn:
            result = conn.execution_options(stream_results=True, max_row_buffer=batch_size).execute(query)
            for partition in result.mappings().partitions(batch_size):
                yield [dict(row) for row in partition]

    def apply_transformation(
        self,
        staged: StagedTable,
        mapping: ColumnMapping,
        transformer: TransformEngine
    ) -> int:
        """
        Compute a mapping's output column with one UPDATE.

        Rows whose source value is NULL are left alone, except for
        default-value and concatenate which exist to handle them.
        """
        table = staged.table()
        source = table.c[mapping.source_column]
        clause = transformer.build_clause(
            source,
            mapping.transformation,
            self.engine_type,
            resolve=lambda name: table.c[name],
            preparer=self.adapter.preparer,
        )
        statement = sa.update(table).values({staged.outputs[mapping.target_column]: clause})
        if mapping.transformation.type not in _NULL_AWARE:
            statement = statement.where(source.is_not(None))

        with self.engine.begin() as conn:
            result = conn.execute(statement)
        return max(result.rowcount, 0)

    def trim_columns(self, staged: StagedTable, columns: List[str], transformer: TransformEngine) -> int:
        """Strip surrounding whitespace from character columns in place."""
        columns = [name for name in columns if is_text_type(staged.column_type(name))]
        if not columns:
            return 0
        table = staged.table()
        trim = TransformationConfig(type=TransformationType.TRIM)
        values = {
            name: transformer.build_clause(table.c[name], trim, self.engine_type)
            for name in columns
        }
        with self.engine.begin() as conn:
            result = conn.execute(sa.update(table).values(values))
        return max(result.rowcount, 0)

    def fill_default(self, staged: StagedTable, column: str, value: Any) -> int:
        """Replace NULLs in a staging column with a default value."""
        table = staged.table()
        statement = sa.update(table).where(table.c[column].is_(None)).values({column: sa.literal(value)})
        with self.engine.begin() as conn:
            result = conn.execute(statement)
        return max(result.rowcount, 0)

    def drop(self, staged: StagedTable) -> None:
        with self.engine.begin() as conn:
            staged.table().drop(conn, checkfirst=True)
