"""Data models for the migration engine."""

from .schema import (
    EngineType,
    ConnectionRole,
    Connection,
    ColumnInfo,
    TableInfo,
    DatabaseSchema,
    TransformationType,
    TransformationConfig,
    ColumnMapping,
    TableKind,
    TableMapping,
)
from .execution import (
    ExecutionStatus,
    StageStatus,
    StageId,
    ErrorHandling,
    LoadStrategy,
    StagingConfig,
    ObjectStoreConfig,
    ETLPipelineConfig,
    StageResult,
    ETLExecution,
)
from .record import (
    ValidationKind,
    ValidationStatus,
    ValidationResult,
    RecordIdMapping,
    AttachmentStatus,
    AttachmentMigrationRecord,
    TableReportDetail,
    MigrationReport,
)

__all__ = [
    "EngineType",
    "ConnectionRole",
    "Connection",
    "ColumnInfo",
    "TableInfo",
    "DatabaseSchema",
    "TransformationType",
    "TransformationConfig",
    "ColumnMapping",
    "TableKind",
    "TableMapping",
    "ExecutionStatus",
    "StageStatus",
    "StageId",
    "ErrorHandling",
    "LoadStrategy",
    "StagingConfig",
    "ObjectStoreConfig",
    "ETLPipelineConfig",
    "StageResult",
    "ETLExecution",
    "ValidationKind",
    "ValidationStatus",
    "ValidationResult",
    "RecordIdMapping",
    "AttachmentStatus",
    "AttachmentMigrationRecord",
    "TableReportDetail",
    "MigrationReport",
]
