"""Pipeline configuration and execution-state models."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Status of a pipeline execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class StageStatus(str, Enum):
    """Status of a single stage."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class StageId(str, Enum):
    """The six pipeline stages, in execution order."""
    EXTRACT = "extract"
    TRANSFORM = "transform"
    LOAD_DIMENSIONS = "load-dimensions"
    LOAD_FACTS = "load-facts"
    VALIDATE = "validate"
    REPORT = "report"

    @property
    def display_name(self) -> str:
        return {
            StageId.EXTRACT: "Extract to Staging",
            StageId.TRANSFORM: "Transform and Cleanse",
            StageId.LOAD_DIMENSIONS: "Load Dimensions",
            StageId.LOAD_FACTS: "Load Facts",
            StageId.VALIDATE: "Validate",
            StageId.REPORT: "Generate Report",
        }[self]


class ErrorHandling(str, Enum):
    """Failure policy applied across stages and tables."""
    FAIL_FAST = "fail-fast"
    CONTINUE_ON_ERROR = "continue-on-error"
    SKIP_AND_LOG = "skip-and-log"


class LoadStrategy(str, Enum):
    """How rows are written into target tables."""
    TRUNCATE_LOAD = "truncate-load"
    MERGE = "merge"
    APPEND = "append"


@dataclass
class StagingConfig:
    """Where staging tables live."""
    schema_name: str = "staging"
    table_prefix: str = "stg_"
    auto_create: bool = True
    # Staging defaults to the target database when no URL is given
    database_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "table_prefix": self.table_prefix,
            "auto_create": self.auto_create,
            "database_url": self.database_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StagingConfig":
        return cls(
            schema_name=data.get("schema_name", "staging"),
            table_prefix=data.get("table_prefix", "stg_"),
            auto_create=data.get("auto_create", True),
            database_url=data.get("database_url"),
        )


@dataclass
class ObjectStoreConfig:
    """Target object store for migrated attachments."""
    url: str
    api_key: Optional[str] = None
    timeout: float = 30.0
    container: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "timeout": self.timeout,
            "container": self.container,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ObjectStoreConfig":
        return cls(
            url=data["url"],
            api_key=data.get("api_key") or os.environ.get("OBJECT_STORE_API_KEY"),
            timeout=data.get("timeout", 30.0),
            container=data.get("container"),
        )

    @classmethod
    def from_environment(cls) -> Optional["ObjectStoreConfig"]:
        """Build from OBJECT_STORE_* environment variables, if set."""
        url = os.environ.get("OBJECT_STORE_URL")
        if not url:
            return None
        return cls(
            url=url,
            api_key=os.environ.get("OBJECT_STORE_API_KEY"),
            timeout=float(os.environ.get("OBJECT_STORE_TIMEOUT", "30")),
            container=os.environ.get("OBJECT_STORE_CONTAINER"),
        )


@dataclass
class ETLPipelineConfig:
    """Configuration for one pipeline execution."""
    project_id: str
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Execution options
    batch_size: int = 1000
    parallelism: int = 1
    error_handling: ErrorHandling = ErrorHandling.CONTINUE_ON_ERROR
    validate_data: bool = True
    load_strategy: LoadStrategy = LoadStrategy.TRUNCATE_LOAD

    # Retry options for batch inserts and attachments
    retry_attempts: int = 3
    retry_delay_seconds: float = 1.0

    staging: StagingConfig = field(default_factory=StagingConfig)
    object_store: Optional[ObjectStoreConfig] = None

    def validate(self) -> None:
        """Raise ConfigurationError when an option is out of range."""
        from ..errors import ConfigurationError

        if not self.project_id:
            raise ConfigurationError("project_id is required")
        if not isinstance(self.batch_size, int) or self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not isinstance(self.parallelism, int) or self.parallelism <= 0:
            raise ConfigurationError(f"parallelism must be a positive integer, got {self.parallelism!r}")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")
        if self.retry_delay_seconds < 0:
            raise ConfigurationError("retry_delay_seconds cannot be negative")

    @property
    def fail_fast(self) -> bool:
        return self.error_handling == ErrorHandling.FAIL_FAST

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "project_id": self.project_id,
            "execution_id": self.execution_id,
            "batch_size": self.batch_size,
            "parallelism": self.parallelism,
            "error_handling": self.error_handling.value,
            "validate_data": self.validate_data,
            "load_strategy": self.load_strategy.value,
            "retry_attempts": self.retry_attempts,
            "retry_delay_seconds": self.retry_delay_seconds,
            "staging": self.staging.to_dict(),
            "object_store": self.object_store.to_dict() if self.object_store else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ETLPipelineConfig":
        """Create from dictionary representation."""
        from ..errors import ConfigurationError

        try:
            error_handling = ErrorHandling(data.get("error_handling", "continue-on-error"))
            load_strategy = LoadStrategy(data.get("load_strategy", "truncate-load"))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

        object_store = data.get("object_store")

        config = cls(
            project_id=data.get("project_id", ""),
            execution_id=data.get("execution_id") or str(uuid.uuid4()),
            batch_size=data.get("batch_size", 1000),
            parallelism=data.get("parallelism", 1),
            error_handling=error_handling,
            validate_data=data.get("validate_data", True),
            load_strategy=load_strategy,
            retry_attempts=data.get("retry_attempts", 3),
            retry_delay_seconds=data.get("retry_delay_seconds", 1.0),
            staging=StagingConfig.from_dict(data.get("staging", {})),
            object_store=(
                ObjectStoreConfig.from_dict(object_store)
                if object_store
                else ObjectStoreConfig.from_environment()
            ),
        )
        config.validate()
        return config


@dataclass
class StageResult:
    """Outcome of one stage. Terminal once finalized."""
    stage_id: StageId
    status: StageStatus = StageStatus.PENDING
    records_processed: int = 0
    records_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.stage_id.display_name

    @property
    def is_terminal(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED)

    @property
    def succeeded(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.SKIPPED)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def start(self) -> None:
        self.status = StageStatus.RUNNING
        self.started_at = utc_now()

    def add_error(self, message: str, table: Optional[str] = None, **details: Any) -> None:
        error = {"message": message, "table": table, "timestamp": utc_now().isoformat()}
        error.update(details)
        self.errors.append(error)

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    def finalize(self, status: StageStatus, error_message: Optional[str] = None) -> "StageResult":
        """Set the terminal status. A finalized result cannot change."""
        if self.is_terminal:
            raise RuntimeError(f"Stage {self.stage_id.value} already finalized as {self.status.value}")
        if status not in (StageStatus.COMPLETED, StageStatus.FAILED, StageStatus.SKIPPED):
            raise ValueError(f"{status.value} is not a terminal stage status")
        self.status = status
        self.error_message = error_message
        if self.started_at is None:
            self.started_at = utc_now()
        self.completed_at = utc_now()
        return self

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "stage_id": self.stage_id.value,
            "name": self.name,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_failed": self.records_failed,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "error_message": self.error_message,
            "errors": self.errors,
            "warnings": self.warnings,
            "metadata": self.metadata,
        }


@dataclass
class ETLExecution:
    """A single run of the six-stage pipeline."""
    project_id: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_stage: Optional[StageId] = None
    stages: List[StageResult] = field(default_factory=list)

    # Statistics
    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    progress: float = 0.0

    # Timing
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    errors: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def get_stage(self, stage_id: StageId) -> Optional[StageResult]:
        """Get the result recorded for a stage."""
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def update_progress(self, completed_stages: int, total_stages: int) -> None:
        """Recompute progress; it never moves backwards."""
        if total_stages <= 0:
            return
        value = round(completed_stages / total_stages * 100, 2)
        self.progress = max(self.progress, min(value, 100.0))

    def add_error(self, message: str, stage: Optional[StageId] = None) -> None:
        self.errors.append({
            "stage": stage.value if stage else None,
            "error": message,
            "timestamp": utc_now().isoformat(),
        })

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "stages": [s.to_dict() for s in self.stages],
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "failed_records": self.failed_records,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "errors": self.errors,
            "metadata": self.metadata,
        }
