"""Stage 6: build and persist the migration report."""

import logging
from typing import Any, Dict, List

from ..models.execution import StageId, StageResult, StageStatus
from ..models.record import MigrationReport, TableReportDetail, ValidationStatus
from .base import StageContext, run_stage

logger = logging.getLogger(__name__)

_LOAD_STAGES = (StageId.LOAD_DIMENSIONS, StageId.LOAD_FACTS)


def build_summary(ctx: StageContext) -> Dict[str, Any]:
    """Summary counts of an execution's stages, validations and trackers."""
    stages = {stage.stage_id: stage for stage in ctx.execution.stages}
    extract = stages.get(StageId.EXTRACT)
    loads = [stages[stage_id] for stage_id in _LOAD_STAGES if stage_id in stages]

    validations = {"passed": 0, "warnings": 0, "failed": 0}
    for validation in ctx.validations:
        if validation.status == ValidationStatus.PASSED:
            validations["passed"] += 1
        elif validation.status == ValidationStatus.WARNING:
            validations["warnings"] += 1
        else:
            validations["failed"] += 1

    attachments = ctx.attachments
    return {
        "totalTables": len(ctx.plan.tables),
        "totalRecords": extract.records_processed if extract else 0,
        "successfulRecords": sum(stage.records_processed for stage in loads),
        "failedRecords": (extract.records_failed if extract else 0) + sum(stage.records_failed for stage in loads),
        "idMappings": ctx.id_mappings.count(),
        "attachments": {
            "total": attachments.total,
            "succeeded": attachments.succeeded,
            "failed": attachments.failed,
            "successRate": attachments.success_rate,
        },
        "validations": validations,
    }


def build_table_details(ctx: StageContext) -> List[TableReportDetail]:
    details = []
    for planned in ctx.plan.tables:
        staged = ctx.staged.get(planned.id)
        outcome = ctx.loaded.get(planned.id)
        detail = TableReportDetail(
            source_table=planned.source_table,
            target_table=planned.target_table,
            kind=planned.kind.value,
            staged_rows=staged.rows_staged if staged else None,
            id_mappings=ctx.id_mappings.count(planned.target_table),
            duplicate_ids=ctx.id_mappings.duplicates(planned.target_table),
        )
        if outcome is None:
            detail.status = "not-loaded"
        else:
            detail.loaded_rows = outcome.records_processed
            detail.failed_rows = outcome.records_failed
            detail.status = "failed" if outcome.failed else "completed"
        details.append(detail)
    return details


def generate_report(ctx: StageContext) -> StageResult:
    """
    Aggregate stage results, validations and trackers into a MigrationReport.

    The report is handed to the context's report sink and kept on the
    context for the controller.
    """

    def body(result: StageResult) -> None:
        execution = ctx.execution
        failed = [stage for stage in execution.stages if stage.status == StageStatus.FAILED]

        errors = list(execution.errors)
        warnings = []
        for stage in execution.stages:
            errors.extend({"stage": stage.stage_id.value, **error} for error in stage.errors)
            warnings.extend(f"{stage.name}: {warning}" for warning in stage.warnings)

        report = MigrationReport(
            execution_id=execution.id,
            project_id=execution.project_id,
            status="completed-with-errors" if failed else "completed",
            started_at=execution.started_at,
            summary=build_summary(ctx),
            stages=[stage.to_dict() for stage in execution.stages],
            tables=build_table_details(ctx),
            validations=list(ctx.validations),
            attachments=ctx.attachments.all(),
            id_mappings=ctx.id_mappings.all(),
            errors=errors,
            warnings=warnings,
        )

        ctx.report_sink.persist_report(report)
        ctx.report = report

        summary = report.summary
        result.records_processed = len(report.tables)
        result.metadata["summary"] = summary
        logger.info(
            f"Report for {execution.id}: {summary['successfulRecords']}/{summary['totalRecords']} records loaded, "
            f"{summary['failedRecords']} failed"
        )

    return run_stage(StageId.REPORT, ctx, body)
