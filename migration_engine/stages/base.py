"""Shared stage machinery: execution control, stage context and outcomes."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

from ..adapters.factory import AdapterFactory
from ..errors import ExecutionCancelled, LoadError
from ..models.execution import (
    ErrorHandling,
    ETLExecution,
    ETLPipelineConfig,
    StageId,
    StageResult,
    StageStatus,
    utc_now,
)
from ..models.record import MigrationReport, ValidationResult
from ..services.id_mapping import AttachmentTracker, IdMappingTracker
from ..services.object_store import ObjectStoreClient
from ..services.repository import ReportSink
from ..services.retry import retry_with_backoff
from ..services.transformer import TransformEngine
from .plan import MigrationPlan
from .staging import StagedTable

logger = logging.getLogger(__name__)

STAGE_ORDER = [
    StageId.EXTRACT,
    StageId.TRANSFORM,
    StageId.LOAD_DIMENSIONS,
    StageId.LOAD_FACTS,
    StageId.VALIDATE,
    StageId.REPORT,
]


class ExecutionControl:
    """
    Pause, resume and cancel signals for one execution.

    All three operations are idempotent. Cancelling also releases a
    paused execution so that it can observe the cancellation.
    """

    def __init__(self):
        self._cancelled = threading.Event()
        self._running = threading.Event()
        self._running.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    def pause(self) -> None:
        if not self.is_cancelled:
            self._running.clear()

    def resume(self) -> None:
        self._running.set()

    def cancel(self) -> None:
        self._cancelled.set()
        self._running.set()

    def check(self) -> None:
        """Raise ExecutionCancelled if cancellation was requested."""
        if self.is_cancelled:
            raise ExecutionCancelled("Execution cancelled")

    def wait_until_resumed(self, timeout: Optional[float] = None) -> bool:
        return self._running.wait(timeout)


@dataclass
class TableOutcome:
    """What happened to one table within a stage."""
    table: str
    records_processed: int = 0
    records_failed: int = 0
    expected_rows: Optional[int] = None
    error: Optional[str] = None
    category: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "error": self.error,
            "category": self.category,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "metadata": self.metadata,
        }


@dataclass
class StageContext:
    """Everything a stage needs, handed over by the controller."""
    config: ETLPipelineConfig
    plan: MigrationPlan
    adapters: AdapterFactory
    control: ExecutionControl
    execution: ETLExecution
    report_sink: ReportSink
    transformer: TransformEngine = field(default_factory=TransformEngine)
    id_mappings: Optional[IdMappingTracker] = None
    attachments: Optional[AttachmentTracker] = None
    object_store: Optional[ObjectStoreClient] = None

    # Shared between stages
    staged: Dict[str, StagedTable] = field(default_factory=dict)
    loaded: Dict[str, TableOutcome] = field(default_factory=dict)
    validations: List[ValidationResult] = field(default_factory=list)
    report: Optional[MigrationReport] = None

    def __post_init__(self):
        if self.id_mappings is None:
            self.id_mappings = IdMappingTracker(self.execution.id)
        if self.attachments is None:
            self.attachments = AttachmentTracker(self.execution.id)

    @property
    def fail_fast(self) -> bool:
        return self.config.fail_fast

    def retry(
        self,
        func: Callable[[], Any],
        description: str,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    ) -> Any:
        """Run ``func`` under the configured retry policy."""
        return retry_with_backoff(
            func,
            attempts=self.config.retry_attempts,
            delay_seconds=self.config.retry_delay_seconds,
            retry_on=retry_on,
            description=description,
        )


def attempt_table(ctx: StageContext, table: str, work: Callable[[TableOutcome], None]) -> TableOutcome:
    """
    Run the work for one table and capture its failure.

    Cancellation is checked first and propagates; any other error is
    recorded on the outcome so the stage can apply its policy.
    """
    ctx.control.check()
    outcome = TableOutcome(table=table, started_at=utc_now())
    try:
        work(outcome)
    except ExecutionCancelled:
        raise
    except Exception as e:
        error = LoadError.from_exception(e, table=table)
        outcome.error = str(e)
        outcome.category = error.category.value
        if outcome.expected_rows is not None:
            outcome.records_failed = max(outcome.expected_rows - outcome.records_processed, 1)
        else:
            outcome.records_failed = max(outcome.records_failed, 1)
        logger.error(f"Table {table} failed: {e}")
    finally:
        outcome.finished_at = utc_now()
    return outcome


def record_outcomes(result: StageResult, outcomes: List[TableOutcome], policy: ErrorHandling) -> None:
    """Fold table outcomes into a stage result and settle its status."""
    tables = result.metadata.setdefault("tables", {})
    for outcome in outcomes:
        result.records_processed += outcome.records_processed
        result.records_failed += outcome.records_failed
        tables[outcome.table] = outcome.to_dict()
        if outcome.failed:
            result.add_error(outcome.error, table=outcome.table, category=outcome.category)

    failed = [o for o in outcomes if o.failed]
    if not failed:
        return

    if policy == ErrorHandling.SKIP_AND_LOG:
        for outcome in failed:
            result.add_warning(f"Skipped {outcome.table}: {outcome.error}")
        result.finalize(StageStatus.COMPLETED)
    else:
        result.finalize(
            StageStatus.FAILED,
            f"{len(failed)} of {len(outcomes)} tables failed: {', '.join(o.table for o in failed)}",
        )


def run_stage(stage_id: StageId, ctx: StageContext, body: Callable[[StageResult], None]) -> StageResult:
    """
    Run a stage body and return its finalized result.

    A stage-level error fails the stage; the controller decides whether
    the pipeline continues. Cancellation finalizes the stage as failed
    with ``metadata["cancelled"]`` set.
    """
    number = STAGE_ORDER.index(stage_id) + 1
    logger.info(f"=== STAGE {number}: {stage_id.display_name.upper()} ===")

    result = StageResult(stage_id=stage_id)
    result.start()
    try:
        body(result)
        if not result.is_terminal:
            result.finalize(StageStatus.COMPLETED)
    except ExecutionCancelled:
        logger.warning(f"{stage_id.display_name} interrupted by cancellation")
        result.metadata["cancelled"] = True
        if not result.is_terminal:
            result.finalize(StageStatus.FAILED, "Execution cancelled")
    except Exception as e:
        logger.error(f"{stage_id.display_name} failed: {e}")
        result.add_error(str(e))
        if not result.is_terminal:
            result.finalize(StageStatus.FAILED, str(e))

    logger.info(
        f"{stage_id.display_name} {result.status.value}: {result.records_processed} processed, "
        f"{result.records_failed} failed"
    )
    return result
