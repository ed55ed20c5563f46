"""Stage 2: push-down transformations and cleansing inside staging."""

import logging
from functools import partial

from ..errors import MigrationEngineError
from ..models.execution import StageId, StageResult
from .base import StageContext, TableOutcome, attempt_table, record_outcomes, run_stage
from .plan import PlannedTable
from .pool import TableWorkerPool
from .staging import StagingArea

logger = logging.getLogger(__name__)


def transform_and_cleanse(ctx: StageContext) -> StageResult:
    """
    Apply each column transformation as one UPDATE over the staging table.

    Afterwards untransformed character columns are trimmed and NULLs in
    non-nullable columns are replaced by the mapping's default value.
    """

    def body(result: StageResult) -> None:
        tables = [t for t in ctx.plan.tables if t.id in ctx.staged]
        for planned in ctx.plan.tables:
            if planned.id not in ctx.staged:
                result.add_warning(f"{planned.source_table} was not staged; transformation skipped")

        with ctx.adapters.open_staging() as staging_adapter:
            staging = StagingArea(staging_adapter, ctx.config.staging)

            def transform_table(planned: PlannedTable, outcome: TableOutcome) -> None:
                staged = ctx.staged[planned.id]
                outcome.expected_rows = staged.rows_staged
                errors = []
                columns = outcome.metadata.setdefault("columns", {})

                for mapping in planned.transformed_columns:
                    try:
                        updated = staging.apply_transformation(staged, mapping, ctx.transformer)
                        columns[mapping.target_column] = updated
                        logger.debug(
                            f"{planned.source_table}.{mapping.source_column}: "
                            f"{mapping.transformation.type.value} applied to {updated} rows"
                        )
                    except Exception as e:
                        if ctx.fail_fast:
                            raise
                        logger.error(f"Transformation of {planned.source_table}.{mapping.source_column} failed: {e}")
                        errors.append(f"{mapping.source_column}: {e}")

                plain = [
                    m.source_column
                    for m in planned.output_columns
                    if not m.is_transformed
                ]
                outcome.metadata["trimmed_rows"] = staging.trim_columns(staged, plain, ctx.transformer)

                filled = 0
                for mapping in planned.output_columns:
                    if not mapping.nullable and mapping.default_value is not None:
                        filled += staging.fill_default(staged, staged.load_column(mapping), mapping.default_value)
                outcome.metadata["defaults_filled"] = filled

                if errors:
                    raise MigrationEngineError(
                        f"{len(errors)} transformations failed on {planned.source_table}: {'; '.join(errors)}"
                    )
                outcome.records_processed = staged.rows_staged

            pool = TableWorkerPool(ctx.config.parallelism, ctx.control, stop_on_failure=ctx.fail_fast)
            outcomes = pool.run(
                tables,
                lambda planned: attempt_table(ctx, planned.source_table, partial(transform_table, planned)),
            )
            by_name = {t.source_table: t for t in tables}
            for outcome in outcomes:
                if outcome.failed:
                    ctx.staged[by_name[outcome.table].id].transform_failed = True
            record_outcomes(result, outcomes, ctx.config.error_handling)

    return run_stage(StageId.TRANSFORM, ctx, body)
