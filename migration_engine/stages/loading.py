"""Table loading shared by the dimension and fact stages."""

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa

from ..adapters.base import DatabaseAdapter, Row
from ..errors import LoadError
from ..models.execution import LoadStrategy, StageId, StageResult
from ..models.schema import ColumnMapping
from .base import StageContext, TableOutcome, attempt_table, record_outcomes, run_stage
from .plan import PlannedTable
from .pool import TableWorkerPool
from .staging import StagedTable, StagingArea

logger = logging.getLogger(__name__)

SOURCE_KEY_LABEL = "__source_key"

Pairs = List[Tuple[Any, Any]]


@dataclass
class KeyLookup:
    """How to turn a parent's source key into its target key."""
    column: ColumnMapping
    parent: PlannedTable
    # Target primary key of the parent
    parent_key: str
    # Parent target column that holds the parent's source key, if mapped
    carried_key: Optional[str] = None
    unresolved: int = 0

    @property
    def target_column(self) -> str:
        return self.column.target_column

    def to_dict(self) -> Dict[str, Any]:
        return {"parent": self.parent.target_table, "unresolved": self.unresolved}


class TableLoader:
    """
    Moves one staged table into its target table in a single transaction.

    When staging lives in the target database the rows are copied with
    one ``INSERT ... SELECT``; otherwise staging rows are streamed
    through the target adapter in batches. Either way a failing table
    rolls back alone and its ID mappings are never recorded.

    Columns that hold a parent table's key are rewritten to the key the
    parent row received in the target.
    """

    def __init__(
        self,
        ctx: StageContext,
        target: DatabaseAdapter,
        staging: StagingArea,
        push_down: bool
    ):
        self.ctx = ctx
        self.target = target
        self.staging = staging
        self.push_down = push_down
        self.strategy = ctx.config.load_strategy
        self.batch_size = ctx.config.batch_size

    def load(self, planned: PlannedTable, outcome: TableOutcome) -> None:
        staged = self.ctx.staged.get(planned.id)
        if staged is None:
            raise LoadError(f"{planned.source_table} was not staged; nothing to load", table=planned.target_table)
        outcome.expected_rows = staged.rows_staged
        if staged.transform_failed:
            raise LoadError(
                f"Transformations failed for {planned.source_table}; table not loaded",
                table=planned.target_table,
            )

        lookups = self.key_lookups(planned)
        target_key = self.target.primary_key(planned.target_table)
        if self.push_down:
            loaded, pairs = self._load_push_down(planned, staged, target_key, lookups, outcome)
        else:
            loaded, pairs = self._load_streaming(planned, staged, target_key, lookups, outcome)

        outcome.records_processed = loaded
        outcome.metadata["id_mappings"] = self.ctx.id_mappings.record_many(
            planned.target_table,
            pairs,
            source_id_column=staged.key_column,
            target_id_column=target_key,
        )
        if lookups:
            outcome.metadata["foreign_keys"] = {lookup.target_column: lookup.to_dict() for lookup in lookups}
            for lookup in lookups:
                if lookup.unresolved:
                    logger.warning(
                        f"{lookup.unresolved} values of {planned.target_table}.{lookup.target_column} "
                        f"match no loaded {lookup.parent.target_table} row"
                    )
        logger.info(
            f"Loaded {loaded} rows into {planned.target_table} "
            f"({outcome.metadata['id_mappings']} ID mappings)"
        )

    def key_lookups(self, planned: PlannedTable) -> List[KeyLookup]:
        """
        Foreign keys of a table whose values change on the way to the target.

        A parent that kept its source key as its target key needs no
        lookup.

        Raises:
            LoadError: if a parent was not loaded, or its keys cannot be traced
        """
        lookups = []
        for foreign_key in planned.foreign_keys:
            parent = self.ctx.plan.get(foreign_key.parent)
            column = f"{planned.target_table}.{foreign_key.column.target_column}"
            parent_outcome = self.ctx.loaded.get(parent.id)
            if parent_outcome is None or parent_outcome.failed:
                raise LoadError(
                    f"{column} references {parent.target_table}, which was not loaded",
                    table=planned.target_table,
                )

            parent_key = self.target.primary_key(parent.target_table)
            if parent_key is None:
                continue
            parent_staged = self.ctx.staged.get(parent.id)
            carried = parent.key_mapping(parent_staged.key_column if parent_staged else None)
            if carried is not None and carried.target_column == parent_key and not carried.is_transformed:
                continue

            lookup = KeyLookup(
                column=foreign_key.column,
                parent=parent,
                parent_key=parent_key,
                carried_key=carried.target_column if carried is not None else None,
            )
            if self.push_down and lookup.carried_key is None:
                raise LoadError(
                    f"Cannot resolve {column}: {parent.target_table} does not keep its source key",
                    table=planned.target_table,
                )
            if not self.push_down and parent_outcome.records_processed and not self.ctx.id_mappings.count(
                parent.target_table
            ):
                raise LoadError(
                    f"Cannot resolve {column}: no ID mappings were recorded for {parent.target_table}",
                    table=planned.target_table,
                )
            lookups.append(lookup)
        return lookups

    def _resolved_column(self, stg: sa.Table, staged: StagedTable, lookup: KeyLookup):
        """Correlated subquery yielding the parent's target key for a staged value."""
        parent = self.target.reflect_table(lookup.parent.target_table)
        value = stg.c[staged.load_column(lookup.column)]
        return (
            sa.select(parent.c[lookup.parent_key])
            .where(parent.c[lookup.carried_key] == value)
            .limit(1)
            .scalar_subquery()
        )

    def _count_unresolved(self, session, stg: sa.Table, staged: StagedTable, lookup: KeyLookup) -> int:
        parent = self.target.reflect_table(lookup.parent.target_table)
        value = stg.c[staged.load_column(lookup.column)]
        query = (
            sa.select(sa.func.count())
            .select_from(stg)
            .where(value.is_not(None))
            .where(~sa.exists().where(parent.c[lookup.carried_key] == value))
        )
        return session.execute(query).scalar_one()

    def _load_push_down(
        self,
        planned: PlannedTable,
        staged: StagedTable,
        target_key: Optional[str],
        lookups: List[KeyLookup],
        outcome: TableOutcome
    ) -> Tuple[int, Pairs]:
        target_table = self.target.reflect_table(planned.target_table)
        stg = staged.table()
        mappings = planned.output_columns
        key_mapping = planned.key_mapping(staged.key_column)
        resolved = {lookup.target_column: lookup for lookup in lookups}

        with self.target.transaction() as session:
            if self.strategy == LoadStrategy.TRUNCATE_LOAD:
                session.truncate(planned.target_table)
            elif self.strategy == LoadStrategy.MERGE:
                if key_mapping is None:
                    outcome.metadata["warning"] = "No key mapping; merge behaved as append"
                else:
                    correlated = target_table.c[key_mapping.target_column]
                    replaced = session.execute(
                        sa.delete(target_table).where(
                            correlated.in_(sa.select(stg.c[staged.load_column(key_mapping)]))
                        )
                    )
                    outcome.metadata["replaced"] = max(replaced.rowcount, 0)

            for lookup in lookups:
                lookup.unresolved = self._count_unresolved(session, stg, staged, lookup)

            values = []
            for mapping in mappings:
                if mapping.target_column in resolved:
                    values.append(self._resolved_column(stg, staged, resolved[mapping.target_column]))
                else:
                    values.append(stg.c[staged.load_column(mapping)])
            inserted = session.execute(
                sa.insert(target_table).from_select([m.target_column for m in mappings], sa.select(*values))
            )
            loaded = inserted.rowcount if inserted.rowcount >= 0 else staged.rows_staged

            pairs: Pairs = []
            if key_mapping is not None and target_key is not None:
                correlated = target_table.c[key_mapping.target_column]
                query = (
                    sa.select(stg.c[staged.key_column], target_table.c[target_key])
                    .select_from(target_table.join(stg, correlated == stg.c[staged.load_column(key_mapping)]))
                )
                for partition in session.execute(query).partitions(self.batch_size):
                    pairs.extend((row[0], row[1]) for row in partition)

        return loaded, pairs

    def _resolve_batch(self, batch: List[Row], lookups: List[KeyLookup]) -> None:
        """Replace parent source keys in a batch with their target keys."""
        for lookup in lookups:
            table = lookup.parent.target_table
            for row in batch:
                value = row.get(lookup.target_column)
                if value is None:
                    continue
                target_id = self.ctx.id_mappings.target_key(table, value)
                if target_id is None:
                    lookup.unresolved += 1
                row[lookup.target_column] = target_id

    def _load_streaming(
        self,
        planned: PlannedTable,
        staged: StagedTable,
        target_key: Optional[str],
        lookups: List[KeyLookup],
        outcome: TableOutcome
    ) -> Tuple[int, Pairs]:
        stg = staged.table()
        mappings = planned.output_columns
        key_mapping = planned.key_mapping(staged.key_column)

        columns = [stg.c[staged.load_column(m)].label(m.target_column) for m in mappings]
        if staged.key_column:
            columns.append(stg.c[staged.key_column].label(SOURCE_KEY_LABEL))
        query = sa.select(*columns)

        loaded = 0
        pairs: Pairs = []
        with self.target.transaction() as session:
            if self.strategy == LoadStrategy.TRUNCATE_LOAD:
                session.truncate(planned.target_table)
            elif self.strategy == LoadStrategy.MERGE and key_mapping is None:
                outcome.metadata["warning"] = "No key mapping; merge behaved as append"

            replaced = 0
            for batch in self.staging.stream(query, self.batch_size):
                source_keys = [row.pop(SOURCE_KEY_LABEL, None) for row in batch]
                self._resolve_batch(batch, lookups)
                if self.strategy == LoadStrategy.MERGE and key_mapping is not None:
                    replaced += session.delete_keys(
                        planned.target_table,
                        key_mapping.target_column,
                        [row[key_mapping.target_column] for row in batch],
                    )
                keys = session.load_batch(planned.target_table, batch, key_column=target_key)
                if staged.key_column:
                    pairs.extend(zip(source_keys, keys))
                loaded += len(batch)

            if self.strategy == LoadStrategy.MERGE and key_mapping is not None:
                outcome.metadata["replaced"] = replaced

        return loaded, pairs


def run_load_stage(
    stage_id: StageId,
    ctx: StageContext,
    tables: List[PlannedTable],
    before_load=None,
    after_load=None
) -> StageResult:
    """
    Load tables one at a time in dependency order.

    Args:
        stage_id: Stage being run
        ctx: Stage context
        tables: Planned tables in load order
        before_load: Called with (target, result) before the first table
        after_load: Called with (target, result) after the last table
    """

    def body(result: StageResult) -> None:
        push_down = ctx.adapters.staging_shares_target
        with ctx.adapters.open_target() as target:
            if push_down:
                staging = StagingArea(target, ctx.config.staging)
                loader = TableLoader(ctx, target, staging, push_down=True)
                outcomes = _load_tables(ctx, loader, tables, target, result, before_load)
            else:
                with ctx.adapters.open_staging() as staging_adapter:
                    staging = StagingArea(staging_adapter, ctx.config.staging)
                    loader = TableLoader(ctx, target, staging, push_down=False)
                    outcomes = _load_tables(ctx, loader, tables, target, result, before_load)

            if after_load is not None:
                after_load(target, result)

        record_outcomes(result, outcomes, ctx.config.error_handling)
        result.metadata["push_down"] = push_down

    return run_stage(stage_id, ctx, body)


def _load_tables(ctx, loader, tables, target, result, before_load) -> List[TableOutcome]:
    if before_load is not None:
        before_load(target, result)

    def load_one(planned: PlannedTable) -> TableOutcome:
        # Recorded at once: later tables resolve their keys against it
        outcome = attempt_table(ctx, planned.target_table, partial(loader.load, planned))
        ctx.loaded[planned.id] = outcome
        return outcome

    pool = TableWorkerPool(1, ctx.control, stop_on_failure=ctx.fail_fast)
    return pool.run(tables, load_one)
