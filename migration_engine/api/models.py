"""Pydantic models for API requests and responses."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ExecutionStatusEnum(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class ErrorHandlingEnum(str, Enum):
    FAIL_FAST = "fail-fast"
    CONTINUE_ON_ERROR = "continue-on-error"
    SKIP_AND_LOG = "skip-and-log"


class LoadStrategyEnum(str, Enum):
    TRUNCATE_LOAD = "truncate-load"
    MERGE = "merge"
    APPEND = "append"


class ExecutionAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"


# Request Models
class StagingRequest(BaseModel):
    schema_name: str = "staging"
    table_prefix: str = "stg_"
    auto_create: bool = True
    database_url: Optional[str] = None


class ExecutionStartRequest(BaseModel):
    project_id: str
    execution_id: Optional[str] = None
    batch_size: int = Field(default=1000, gt=0)
    parallelism: int = Field(default=1, gt=0)
    error_handling: ErrorHandlingEnum = ErrorHandlingEnum.CONTINUE_ON_ERROR
    validate_data: bool = True
    load_strategy: LoadStrategyEnum = LoadStrategyEnum.TRUNCATE_LOAD
    retry_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    staging: StagingRequest = Field(default_factory=StagingRequest)


# Response Models
class StageResultResponse(BaseModel):
    stage_id: str
    name: str
    status: str
    records_processed: int = 0
    records_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ExecutionResponse(BaseModel):
    id: str
    project_id: str
    status: ExecutionStatusEnum
    current_stage: Optional[str] = None
    stages: List[StageResultResponse] = Field(default_factory=list)
    total_records: int = 0
    processed_records: int = 0
    failed_records: int = 0
    progress: float = 0.0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class ExecutionListResponse(BaseModel):
    executions: List[ExecutionResponse]
    total: int


class ExecutionStartResponse(BaseModel):
    status: str
    execution_id: str


class ExecutionActionResponse(BaseModel):
    execution_id: str
    action: ExecutionAction
    status: ExecutionStatusEnum
