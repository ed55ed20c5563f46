"""Migration controller - runs the six-stage pipeline for one execution."""

import copy
import logging
import threading
from typing import Callable, Dict, List, Optional, Tuple

from .adapters.factory import AdapterFactory
from .errors import ExecutionCancelled, MigrationEngineError
from .models.execution import (
    ETLExecution,
    ETLPipelineConfig,
    ExecutionStatus,
    StageId,
    StageResult,
    StageStatus,
    utc_now,
)
from .models.record import MigrationReport
from .services.object_store import ObjectStoreClient
from .services.repository import JsonFileReportSink, MappingRepository, ReportSink
from .services.transformer import TransformEngine
from .stages import (
    ExecutionControl,
    StageContext,
    build_plan,
    extract_to_staging,
    generate_report,
    load_dimensions,
    load_facts,
    transform_and_cleanse,
    validate_load,
)

logger = logging.getLogger(__name__)

StageFunction = Callable[[StageContext], StageResult]

STAGES: List[Tuple[StageId, StageFunction]] = [
    (StageId.EXTRACT, extract_to_staging),
    (StageId.TRANSFORM, transform_and_cleanse),
    (StageId.LOAD_DIMENSIONS, load_dimensions),
    (StageId.LOAD_FACTS, load_facts),
    (StageId.VALIDATE, validate_load),
    (StageId.REPORT, generate_report),
]

# Stages whose record counts describe rows moved
_RECORD_STAGES = (StageId.EXTRACT, StageId.LOAD_DIMENSIONS, StageId.LOAD_FACTS)
_LOAD_STAGES = (StageId.LOAD_DIMENSIONS, StageId.LOAD_FACTS)


class _PipelineAborted(MigrationEngineError):
    """A stage failed under fail-fast; already recorded on the execution."""


class ExecutionRegistry:
    """
    Status snapshots and lifecycle signals of known executions.

    Snapshots are deep copies published by the controller, so readers on
    other threads never see an execution mid-update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, ETLExecution] = {}
        self._controls: Dict[str, ExecutionControl] = {}

    def register(self, execution: ETLExecution, control: ExecutionControl) -> None:
        with self._lock:
            self._controls[execution.id] = control
        self.publish(execution)

    def publish(self, execution: ETLExecution) -> None:
        snapshot = copy.deepcopy(execution)
        with self._lock:
            control = self._controls.get(execution.id)
            if control is not None and control.is_paused and not snapshot.is_terminal:
                snapshot.status = ExecutionStatus.PAUSED
            self._snapshots[execution.id] = snapshot

    def get_status(self, execution_id: str) -> Optional[ETLExecution]:
        """Latest snapshot of an execution, or None if unknown."""
        with self._lock:
            snapshot = self._snapshots.get(execution_id)
            return copy.deepcopy(snapshot) if snapshot else None

    def list(self) -> List[ETLExecution]:
        with self._lock:
            return [copy.deepcopy(s) for s in self._snapshots.values()]

    def pause(self, execution_id: str) -> bool:
        """Request a pause at the next stage boundary. False if unknown."""
        with self._lock:
            control = self._controls.get(execution_id)
            snapshot = self._snapshots.get(execution_id)
            if control is None:
                return False
            if snapshot.is_terminal:
                return True
            control.pause()
            if control.is_paused:
                snapshot.status = ExecutionStatus.PAUSED
        logger.info(f"Pause requested for execution {execution_id}")
        return True

    def resume(self, execution_id: str) -> bool:
        with self._lock:
            control = self._controls.get(execution_id)
            snapshot = self._snapshots.get(execution_id)
            if control is None:
                return False
            control.resume()
            if snapshot.status == ExecutionStatus.PAUSED:
                snapshot.status = ExecutionStatus.RUNNING if snapshot.started_at else ExecutionStatus.PENDING
        logger.info(f"Resume requested for execution {execution_id}")
        return True

    def cancel(self, execution_id: str) -> bool:
        """Request cancellation; also releases a paused execution. False if unknown."""
        with self._lock:
            control = self._controls.get(execution_id)
            if control is None:
                return False
            control.cancel()
        logger.info(f"Cancellation requested for execution {execution_id}")
        return True


class MigrationController:
    """
    Runs one execution of the staged pipeline.

    Handles:
    - Building and validating the migration plan
    - Running the six stages strictly in order
    - Progress and record accounting
    - The error-handling policy between stages
    - Pause, resume and cancel at stage boundaries
    """

    def __init__(
        self,
        config: ETLPipelineConfig,
        repository: MappingRepository,
        report_sink: Optional[ReportSink] = None,
        adapter_factory: Callable[..., AdapterFactory] = AdapterFactory,
        transformer: Optional[TransformEngine] = None,
        object_store: Optional[ObjectStoreClient] = None,
        registry: Optional[ExecutionRegistry] = None
    ):
        """
        Initialize the controller.

        Args:
            config: Pipeline configuration
            repository: Source of connections and mappings
            report_sink: Receives the final report (JSON files by default)
            adapter_factory: Called with (source, target, staging config)
            transformer: Transformation engine
            object_store: Attachment upload client (built from config if omitted)
            registry: Registry that publishes status and routes signals
        """
        self.config = config
        self.repository = repository
        self.report_sink = report_sink or JsonFileReportSink()
        self.adapter_factory = adapter_factory
        self.transformer = transformer or TransformEngine()
        self.registry = registry or ExecutionRegistry()

        self._owns_object_store = object_store is None and config.object_store is not None
        self.object_store = object_store
        if self._owns_object_store:
            self.object_store = ObjectStoreClient(config.object_store)

        self.control = ExecutionControl()
        self.execution = ETLExecution(project_id=config.project_id, id=config.execution_id)
        self.report: Optional[MigrationReport] = None
        self.registry.register(self.execution, self.control)

    def pause(self) -> None:
        self.registry.pause(self.execution.id)

    def resume(self) -> None:
        self.registry.resume(self.execution.id)

    def cancel(self) -> None:
        self.registry.cancel(self.execution.id)

    def execute(self) -> ETLExecution:
        """
        Run the pipeline to completion, failure or cancellation.

        Returns:
            The execution with its stage results and totals
        """
        execution = self.execution
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = utc_now()
        self._publish()
        logger.info(f"Starting execution {execution.id} for project {execution.project_id}")

        try:
            self.control.check()
            self.config.validate()
            plan = build_plan(self.config.project_id, self.repository, self.transformer)
            ctx = StageContext(
                config=self.config,
                plan=plan,
                adapters=self.adapter_factory(plan.source, plan.target, self.config.staging),
                control=self.control,
                execution=execution,
                report_sink=self.report_sink,
                transformer=self.transformer,
                object_store=self.object_store,
            )
            execution.metadata["plan"] = plan.to_dict()

            for index, (stage_id, run) in enumerate(STAGES):
                self._checkpoint()
                execution.current_stage = stage_id
                self._publish()

                result = run(ctx)
                execution.stages.append(result)
                self._accumulate(result)

                if result.metadata.get("cancelled"):
                    raise ExecutionCancelled(f"Cancelled during {stage_id.display_name}")

                if result.status == StageStatus.FAILED:
                    message = f"{stage_id.display_name} failed: {result.error_message}"
                    execution.add_error(message, stage_id)
                    if self.config.fail_fast:
                        raise _PipelineAborted(message)
                    logger.warning(f"{message}; continuing")

                execution.update_progress(index + 1, len(STAGES))
                self._publish()

            execution.status = ExecutionStatus.COMPLETED
            self.report = ctx.report
            logger.info("=== MIGRATION COMPLETED ===")

        except ExecutionCancelled as e:
            execution.status = ExecutionStatus.CANCELLED
            logger.warning(f"Execution {execution.id} cancelled: {e}")

        except _PipelineAborted as e:
            execution.status = ExecutionStatus.FAILED
            logger.error(f"Execution {execution.id} aborted: {e}")

        except Exception as e:
            logger.error(f"Execution {execution.id} failed: {e}")
            execution.status = ExecutionStatus.FAILED
            execution.add_error(str(e), execution.current_stage)

        finally:
            execution.completed_at = utc_now()
            self._publish()
            if self._owns_object_store:
                self.object_store.close()

        return execution

    def _checkpoint(self) -> None:
        """Stage boundary: observe cancellation and wait out a pause."""
        self.control.check()
        if not self.control.is_paused:
            return

        self.execution.status = ExecutionStatus.PAUSED
        self._publish()
        logger.info(f"Execution {self.execution.id} paused")
        self.control.wait_until_resumed()
        self.control.check()

        self.execution.status = ExecutionStatus.RUNNING
        self._publish()
        logger.info(f"Execution {self.execution.id} resumed")

    def _accumulate(self, result: StageResult) -> None:
        execution = self.execution
        if result.stage_id == StageId.EXTRACT:
            execution.total_records = result.records_processed
        if result.stage_id in _LOAD_STAGES:
            execution.processed_records += result.records_processed
        if result.stage_id in _RECORD_STAGES:
            execution.failed_records += result.records_failed

    def _publish(self) -> None:
        self.registry.publish(self.execution)


def execute_etl_pipeline(
    config: ETLPipelineConfig,
    repository: MappingRepository,
    registry: Optional[ExecutionRegistry] = None,
    **kwargs
) -> ETLExecution:
    """
    Run one pipeline execution and return it.

    Args:
        config: Pipeline configuration
        repository: Source of connections and mappings
        registry: Registry to publish status to
        **kwargs: Passed to MigrationController

    Returns:
        The finished ETLExecution
    """
    controller = MigrationController(config, repository, registry=registry, **kwargs)
    return controller.execute()
