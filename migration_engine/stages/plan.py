"""Migration plan: validated mappings in dependency order."""

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import MappingError, TransformationConfigError
from ..models.schema import (
    ColumnMapping,
    Connection,
    ConnectionRole,
    TableKind,
    TableMapping,
)
from ..services.repository import MappingRepository
from ..services.transformer import TransformEngine

logger = logging.getLogger(__name__)


@dataclass
class ForeignKey:
    """A column that holds the source key of another planned table."""
    column: ColumnMapping
    parent: str

    def to_dict(self) -> Dict[str, Any]:
        return {"column": self.column.target_column, "parent": self.parent}


@dataclass
class PlannedTable:
    """A table mapping with its column mappings and resolved dependencies."""
    mapping: TableMapping
    columns: List[ColumnMapping]
    kind: TableKind = TableKind.DIMENSION
    dependencies: List[str] = field(default_factory=list)
    foreign_keys: List[ForeignKey] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.mapping.id

    @property
    def name(self) -> str:
        return self.mapping.target_table

    @property
    def source_table(self) -> str:
        return self.mapping.source_table

    @property
    def target_table(self) -> str:
        return self.mapping.target_table

    @property
    def load_order(self) -> int:
        return self.mapping.load_order

    @property
    def output_columns(self) -> List[ColumnMapping]:
        """Mappings that produce a target column."""
        return [c for c in self.columns if not c.is_excluded]

    @property
    def transformed_columns(self) -> List[ColumnMapping]:
        return [c for c in self.columns if c.is_transformed]

    def key_mapping(self, source_key: Optional[str]) -> Optional[ColumnMapping]:
        """Mapping that carries the source primary key into the target."""
        if not source_key:
            return None
        for column in self.output_columns:
            if column.source_column == source_key:
                return column
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_table": self.source_table,
            "target_table": self.target_table,
            "kind": self.kind.value,
            "load_order": self.load_order,
            "dependencies": list(self.dependencies),
            "foreign_keys": [fk.to_dict() for fk in self.foreign_keys],
            "columns": len(self.columns),
        }


@dataclass
class MigrationPlan:
    """Everything a run needs to know before data moves."""
    project_id: str
    source: Connection
    target: Connection
    tables: List[PlannedTable] = field(default_factory=list)

    @property
    def dimensions(self) -> List[PlannedTable]:
        return [t for t in self.tables if t.kind == TableKind.DIMENSION]

    @property
    def facts(self) -> List[PlannedTable]:
        return [t for t in self.tables if t.kind == TableKind.FACT]

    def get(self, table_id: str) -> Optional[PlannedTable]:
        for table in self.tables:
            if table.id == table_id:
                return table
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "tables": [t.to_dict() for t in self.tables],
        }


def _table_lookup(tables: List[PlannedTable]) -> Dict[str, str]:
    """Mapping ids by id, source table name and target table name."""
    lookup: Dict[str, str] = {}
    for table in tables:
        for alias in (table.source_table, table.target_table):
            lookup.setdefault(alias, table.id)
    for table in tables:
        lookup[table.id] = table.id
    return lookup


def _resolve_dependencies(tables: List[PlannedTable]) -> None:
    """Turn depends_on names into table mapping ids."""
    lookup = _table_lookup(tables)
    for table in tables:
        resolved = []
        for name in table.mapping.depends_on:
            dependency = lookup.get(name)
            if dependency is None:
                raise MappingError(f"{table.source_table} depends on unknown table {name}")
            if dependency == table.id:
                raise MappingError(f"{table.source_table} depends on itself")
            if dependency not in resolved:
                resolved.append(dependency)
        table.dependencies = resolved


def _singular(name: str) -> str:
    if name.endswith("ies"):
        return name[:-3] + "y"
    if name.endswith(("ses", "xes")):
        return name[:-2]
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def holds_key_of(column: ColumnMapping, parent: PlannedTable) -> bool:
    """
    Whether a column is named after a parent table's key.

    ``country_id``, ``countryid`` and ``country_key`` all hold the key
    of ``countries``.
    """
    name = column.source_column.lower()
    for table_name in (parent.source_table, parent.target_table):
        base = table_name.rsplit(".", 1)[-1].lower()
        for stem in {base, _singular(base)}:
            if name in (f"{stem}_id", f"{stem}id", f"{stem}_key"):
                return True
    return False


def _resolve_foreign_keys(tables: List[PlannedTable]) -> None:
    """
    Find the columns of each table that hold a parent table's key.

    A column that declares ``references`` names its parent outright and
    makes it a dependency. Otherwise a column is matched by name against
    the tables its table depends on.
    """
    lookup = _table_lookup(tables)
    by_id = {table.id: table for table in tables}

    for table in tables:
        foreign_keys = []
        for column in table.output_columns:
            if column.references:
                parent = lookup.get(column.references)
                if parent is None:
                    raise MappingError(
                        f"{table.source_table}.{column.source_column} references unknown table {column.references}"
                    )
                if parent == table.id:
                    continue
                if parent not in table.dependencies:
                    table.dependencies.append(parent)
                foreign_keys.append(ForeignKey(column=column, parent=parent))
                continue

            for dependency in table.dependencies:
                if holds_key_of(column, by_id[dependency]):
                    foreign_keys.append(ForeignKey(column=column, parent=dependency))
                    break
        table.foreign_keys = foreign_keys


def classify(tables: List[PlannedTable]) -> None:
    """
    Assign dimension/fact kinds where the mapping does not declare one.

    A table that depends on others but is itself depended on by nothing
    is a fact; every other table is a dimension.
    """
    depended_on = {dependency for table in tables for dependency in table.dependencies}
    for table in tables:
        if table.mapping.kind is not None:
            table.kind = table.mapping.kind
        elif table.dependencies and table.id not in depended_on:
            table.kind = TableKind.FACT
        else:
            table.kind = TableKind.DIMENSION

    by_id = {table.id: table for table in tables}
    for table in tables:
        if table.kind != TableKind.DIMENSION:
            continue
        for dependency in table.dependencies:
            if by_id[dependency].kind == TableKind.FACT:
                raise MappingError(
                    f"Dimension {table.target_table} depends on fact {by_id[dependency].target_table}"
                )


def topological_order(tables: List[PlannedTable]) -> List[PlannedTable]:
    """
    Order tables so every table follows its dependencies.

    Ties are broken by (load_order, target table name).

    Raises:
        MappingError: if the dependencies contain a cycle
    """
    by_id = {table.id: table for table in tables}
    remaining = {table.id: len(table.dependencies) for table in tables}
    dependents = defaultdict(list)
    for table in tables:
        for dependency in table.dependencies:
            dependents[dependency].append(table.id)

    ready = [
        (table.load_order, table.target_table, table.id)
        for table in tables
        if remaining[table.id] == 0
    ]
    heapq.heapify(ready)

    ordered = []
    while ready:
        _, _, table_id = heapq.heappop(ready)
        ordered.append(by_id[table_id])
        for dependent in dependents[table_id]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                table = by_id[dependent]
                heapq.heappush(ready, (table.load_order, table.target_table, table.id))

    if len(ordered) != len(tables):
        cycle = sorted(by_id[t].target_table for t, count in remaining.items() if count > 0)
        raise MappingError(f"Dependency cycle among tables: {', '.join(cycle)}")
    return ordered


def build_plan(
    project_id: str,
    repository: MappingRepository,
    transformer: Optional[TransformEngine] = None
) -> MigrationPlan:
    """
    Load and validate a project's mappings.

    Every transformation is validated here so that a bad configuration
    fails the run before any data moves.

    Raises:
        MappingError: for unknown projects, empty projects or bad dependencies
        TransformationConfigError: for an invalid transformation
    """
    transformer = transformer or TransformEngine()

    source = repository.get_connection(project_id, ConnectionRole.SOURCE)
    target = repository.get_connection(project_id, ConnectionRole.TARGET)
    mappings = repository.get_table_mappings(project_id)
    if not mappings:
        raise MappingError(f"Project {project_id} has no table mappings")

    seen = set()
    tables = []
    for mapping in mappings:
        if mapping.id in seen:
            raise MappingError(f"Duplicate table mapping id: {mapping.id}")
        seen.add(mapping.id)

        columns = repository.get_column_mappings(mapping.id)
        try:
            transformer.validate_mappings(columns)
        except TransformationConfigError as e:
            raise TransformationConfigError(f"{mapping.source_table}: {e}") from e
        if not any(not column.is_excluded for column in columns):
            raise MappingError(f"{mapping.source_table} maps no columns")

        tables.append(PlannedTable(mapping=mapping, columns=columns))

    _resolve_dependencies(tables)
    _resolve_foreign_keys(tables)
    classify(tables)
    ordered = topological_order(tables)

    plan = MigrationPlan(project_id=project_id, source=source, target=target, tables=ordered)
    logger.info(
        f"Planned {len(plan.dimensions)} dimension and {len(plan.facts)} fact tables: "
        f"{' -> '.join(t.target_table for t in ordered)}"
    )
    return plan
