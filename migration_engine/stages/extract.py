"""Stage 1: copy source tables into staging."""

import logging
from functools import partial

from ..errors import MappingError, SchemaDiscoveryError
from ..models.execution import StageId, StageResult
from .base import StageContext, TableOutcome, attempt_table, record_outcomes, run_stage
from .plan import PlannedTable
from .pool import TableWorkerPool
from .staging import StagingArea

logger = logging.getLogger(__name__)


def extract_to_staging(ctx: StageContext) -> StageResult:
    """
    Stream every mapped source table into a fresh staging table.

    Batches are pulled from the source one at a time and each insert is
    retried; the next batch is only read after the insert completed.
    """

    def body(result: StageResult) -> None:
        with ctx.adapters.open_source() as source, ctx.adapters.open_staging() as staging_adapter:
            staging = StagingArea(staging_adapter, ctx.config.staging)
            staging.ensure_schema()

            schema = source.discover_schema()
            result.metadata["source_tables"] = len(schema.tables)

            def stage_table(planned: PlannedTable, outcome: TableOutcome) -> None:
                info = schema.get_table(planned.source_table)
                if info is None:
                    raise SchemaDiscoveryError(f"Source table {planned.source_table} not found")

                known = {column.name for column in info.columns}
                missing = sorted({m.source_column for m in planned.columns} - known)
                if missing and source.engine_type.is_relational:
                    raise MappingError(
                        f"Columns not found in {planned.source_table}: {', '.join(missing)}"
                    )
                if missing:
                    logger.warning(
                        f"{planned.source_table}: {', '.join(missing)} not in sample document; staged as text"
                    )

                staged = staging.define(planned.source_table, info, source.engine_type, planned.columns)
                staging.create(staged)
                outcome.expected_rows = source.row_count(planned.source_table)

                for batch in source.stream_rows(
                    planned.source_table,
                    ctx.config.batch_size,
                    columns=staged.source_columns,
                ):
                    rows = staging.prepare(staged, batch)
                    ctx.retry(
                        partial(staging.insert, staged, rows),
                        description=f"Staging batch of {planned.source_table}",
                    )
                    outcome.records_processed += len(rows)

                staged.rows_staged = outcome.records_processed
                outcome.metadata["staging_table"] = staged.name
                ctx.staged[planned.id] = staged
                logger.info(f"Staged {staged.rows_staged} rows from {planned.source_table} into {staged.name}")

            pool = TableWorkerPool(ctx.config.parallelism, ctx.control, stop_on_failure=ctx.fail_fast)
            outcomes = pool.run(
                ctx.plan.tables,
                lambda planned: attempt_table(ctx, planned.source_table, partial(stage_table, planned)),
            )
            record_outcomes(result, outcomes, ctx.config.error_handling)
            result.metadata["rows_staged"] = sum(s.rows_staged for s in ctx.staged.values())

    return run_stage(StageId.EXTRACT, ctx, body)
