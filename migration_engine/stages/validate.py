"""Stage 5: post-load validation."""

import logging
from typing import Callable, List, Optional

from ..adapters.base import DatabaseAdapter
from ..errors import ExecutionCancelled
from ..models.execution import LoadStrategy, StageId, StageResult, StageStatus
from ..models.record import ValidationKind, ValidationResult, ValidationStatus
from .base import StageContext, run_stage
from .plan import PlannedTable
from .staging import StagingArea

logger = logging.getLogger(__name__)

# Attachment success rate (percent) below which validation fails
ATTACHMENT_WARNING_RATE = 90.0


class LoadValidator:
    """
    Runs row-count, null, foreign-key, ID-mapping and attachment checks.

    Checks are recorded as ValidationResults and never raised; a check
    that cannot run is recorded as a warning.
    """

    def __init__(self, ctx: StageContext, target: DatabaseAdapter, staging: StagingArea):
        self.ctx = ctx
        self.target = target
        self.staging = staging
        self.results: List[ValidationResult] = []

    def run(self) -> List[ValidationResult]:
        for planned in self.ctx.plan.tables:
            self.ctx.control.check()
            self._guard(planned.target_table, ValidationKind.ROW_COUNT, lambda: self.check_row_count(planned))
            outcome = self.ctx.loaded.get(planned.id)
            if outcome is None or outcome.failed:
                continue
            self._guard(planned.target_table, ValidationKind.NULL_CONSTRAINT, lambda: self.check_nulls(planned))
            self._guard(planned.target_table, ValidationKind.FOREIGN_KEY, lambda: self.check_foreign_keys(planned))
            self._guard(planned.target_table, ValidationKind.CUSTOM, lambda: self.check_id_mappings(planned))

        self.check_attachments()
        return self.results

    def _guard(self, table: str, kind: ValidationKind, check: Callable[[], None]) -> None:
        try:
            check()
        except ExecutionCancelled:
            raise
        except Exception as e:
            logger.warning(f"Could not run {kind.value} check on {table}: {e}")
            self.add(table, kind, ValidationStatus.WARNING, message=f"Check could not run: {e}")

    def add(
        self,
        table: str,
        kind: ValidationKind,
        status: ValidationStatus,
        expected=None,
        actual=None,
        message: str = ""
    ) -> ValidationResult:
        result = ValidationResult(
            table=table,
            kind=kind,
            status=status,
            expected=expected,
            actual=actual,
            message=message,
        )
        self.results.append(result)
        log = logger.info if status == ValidationStatus.PASSED else logger.warning
        log(f"[{status.value}] {table} {kind.value}: {message}")
        return result

    def check_row_count(self, planned: PlannedTable) -> None:
        """Staging and target row counts must agree."""
        table = planned.target_table
        staged = self.ctx.staged.get(planned.id)
        outcome = self.ctx.loaded.get(planned.id)
        if staged is None or outcome is None or outcome.failed:
            reason = outcome.error if outcome is not None and outcome.failed else "table was not loaded"
            self.add(table, ValidationKind.ROW_COUNT, ValidationStatus.WARNING, message=f"Not compared: {reason}")
            return

        expected = self.staging.count(staged)
        actual = self.target.row_count(table)

        if self.ctx.config.load_strategy == LoadStrategy.TRUNCATE_LOAD:
            ok = actual == expected
            rule = "equal"
        else:
            ok = actual >= expected
            rule = "at least"

        if ok:
            self.add(
                table, ValidationKind.ROW_COUNT, ValidationStatus.PASSED, expected, actual,
                f"Target has {actual} rows, staging has {expected}",
            )
        else:
            self.add(
                table, ValidationKind.ROW_COUNT, ValidationStatus.FAILED, expected, actual,
                f"Expected target row count {rule} staging count {expected}, found {actual}",
            )

    def check_nulls(self, planned: PlannedTable) -> None:
        """Non-nullable target columns must hold no NULLs."""
        for mapping in planned.output_columns:
            if mapping.nullable:
                continue
            nulls = self.target.null_count(planned.target_table, mapping.target_column)
            column = f"{planned.target_table}.{mapping.target_column}"
            if nulls:
                self.add(
                    planned.target_table, ValidationKind.NULL_CONSTRAINT, ValidationStatus.FAILED, 0, nulls,
                    f"{column} is not nullable but has {nulls} NULL values",
                )
            else:
                self.add(
                    planned.target_table, ValidationKind.NULL_CONSTRAINT, ValidationStatus.PASSED, 0, 0,
                    f"{column} has no NULL values",
                )

    def check_foreign_keys(self, planned: PlannedTable) -> None:
        """Every set foreign key must point at a row of its parent."""
        outcome = self.ctx.loaded[planned.id]
        resolved = outcome.metadata.get("foreign_keys", {})
        table = planned.target_table

        for foreign_key in planned.foreign_keys:
            parent = self.ctx.plan.get(foreign_key.parent)
            column = f"{table}.{foreign_key.column.target_column}"
            parent_outcome = self.ctx.loaded.get(parent.id)
            if parent_outcome is None or parent_outcome.failed:
                self.add(
                    table, ValidationKind.FOREIGN_KEY, ValidationStatus.WARNING,
                    message=f"{column} not checked: {parent.target_table} was not loaded",
                )
                continue
            parent_key = self.target.primary_key(parent.target_table)
            if parent_key is None:
                self.add(
                    table, ValidationKind.FOREIGN_KEY, ValidationStatus.WARNING,
                    message=f"{column} not checked: {parent.target_table} has no primary key",
                )
                continue

            orphans = self.target.orphan_count(table, foreign_key.column.target_column, parent.target_table, parent_key)
            unresolved = resolved.get(foreign_key.column.target_column, {}).get("unresolved", 0)
            target = f"{parent.target_table}.{parent_key}"
            if orphans or unresolved:
                self.add(
                    table, ValidationKind.FOREIGN_KEY, ValidationStatus.FAILED, 0, orphans + unresolved,
                    f"{column}: {orphans} values match no {target}, {unresolved} source keys were never loaded",
                )
            else:
                self.add(
                    table, ValidationKind.FOREIGN_KEY, ValidationStatus.PASSED, 0, 0,
                    f"Every {column} value matches a {target}",
                )

    def check_id_mappings(self, planned: PlannedTable) -> None:
        """A keyed table should have produced ID mappings."""
        table = planned.target_table
        if self.target.primary_key(table) is None:
            return
        count = self.ctx.id_mappings.count(table)
        staged_rows = self.ctx.staged[planned.id].rows_staged
        if count == 0 and staged_rows > 0:
            self.add(
                table, ValidationKind.CUSTOM, ValidationStatus.WARNING, None, 0,
                f"No ID mappings were recorded for {table}",
            )
        else:
            self.add(
                table, ValidationKind.CUSTOM, ValidationStatus.PASSED, None, count,
                f"{count} ID mappings recorded for {table}",
            )

    def check_attachments(self) -> None:
        rate: Optional[float] = self.ctx.attachments.success_rate
        if rate is None:
            return
        attachments = self.ctx.attachments
        message = f"{attachments.succeeded} of {attachments.total} attachments migrated ({rate:.1f}%)"
        if rate >= 100.0:
            status = ValidationStatus.PASSED
        elif rate >= ATTACHMENT_WARNING_RATE:
            status = ValidationStatus.WARNING
        else:
            status = ValidationStatus.FAILED
        self.add("attachments", ValidationKind.CUSTOM, status, 100.0, round(rate, 2), message)


def validate_load(ctx: StageContext) -> StageResult:
    """
    Check what was loaded against staging.

    Failed checks are reported, not raised; the stage itself only fails
    when the databases cannot be opened. Skipped when validate_data is off.
    """

    def body(result: StageResult) -> None:
        if not ctx.config.validate_data:
            logger.info("Validation disabled; skipping")
            result.finalize(StageStatus.SKIPPED)
            return

        with ctx.adapters.open_target() as target:
            if ctx.adapters.staging_shares_target:
                results = LoadValidator(ctx, target, StagingArea(target, ctx.config.staging)).run()
            else:
                with ctx.adapters.open_staging() as staging_adapter:
                    staging = StagingArea(staging_adapter, ctx.config.staging)
                    results = LoadValidator(ctx, target, staging).run()

        ctx.validations = results
        counts = {status.value: 0 for status in ValidationStatus}
        for validation in results:
            counts[validation.status.value] += 1
            if validation.status == ValidationStatus.WARNING:
                result.add_warning(f"{validation.table}: {validation.message}")
            elif validation.status == ValidationStatus.FAILED:
                result.add_error(validation.message, table=validation.table, kind=validation.kind.value)

        result.records_processed = len(results)
        result.records_failed = counts[ValidationStatus.FAILED.value]
        result.metadata["validations"] = counts

    return run_stage(StageId.VALIDATE, ctx, body)
