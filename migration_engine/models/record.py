"""Record-level models: validations, ID mappings, attachments and reports."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .execution import utc_now


class ValidationKind(str, Enum):
    ROW_COUNT = "row-count"
    NULL_CONSTRAINT = "null-constraint"
    FOREIGN_KEY = "foreign-key"
    CUSTOM = "custom"


class ValidationStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"


@dataclass
class ValidationResult:
    """Outcome of one post-load check. Recorded, never raised."""
    table: str
    kind: ValidationKind
    status: ValidationStatus
    expected: Optional[Any] = None
    actual: Optional[Any] = None
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.status == ValidationStatus.PASSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "kind": self.kind.value,
            "status": self.status.value,
            "expected": self.expected,
            "actual": self.actual,
            "message": self.message,
        }


@dataclass
class RecordIdMapping:
    """Correspondence between a source key and the target key of one record."""
    execution_id: str
    table: str
    source_id: str
    target_id: str
    source_id_column: Optional[str] = None
    target_id_column: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple:
        return (self.execution_id, self.table, self.source_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "table": self.table,
            "source_id": self.source_id,
            "source_id_column": self.source_id_column,
            "target_id": self.target_id,
            "target_id_column": self.target_id_column,
            "created_at": self.created_at.isoformat(),
        }


class AttachmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AttachmentMigrationRecord:
    """Tracks one attachment moved from a document store to the object store."""
    execution_id: str
    document_id: str
    attachment_name: str
    source_url: Optional[str] = None
    target_url: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    status: AttachmentStatus = AttachmentStatus.PENDING
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "document_id": self.document_id,
            "attachment_name": self.attachment_name,
            "source_url": self.source_url,
            "target_url": self.target_url,
            "content_type": self.content_type,
            "size": self.size,
            "status": self.status.value,
            "error": self.error,
            "attempts": self.attempts,
        }


@dataclass
class TableReportDetail:
    """Per-table line of the migration report."""
    source_table: str
    target_table: str
    kind: str
    staged_rows: Optional[int] = None
    loaded_rows: int = 0
    failed_rows: int = 0
    id_mappings: int = 0
    duplicate_ids: int = 0
    status: str = "completed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_table": self.source_table,
            "target_table": self.target_table,
            "kind": self.kind,
            "staged_rows": self.staged_rows,
            "loaded_rows": self.loaded_rows,
            "failed_rows": self.failed_rows,
            "id_mappings": self.id_mappings,
            "duplicate_ids": self.duplicate_ids,
            "status": self.status,
        }


@dataclass
class MigrationReport:
    """Aggregated result of an execution, handed to a report sink."""
    execution_id: str
    project_id: str
    status: str
    started_at: Optional[datetime] = None
    generated_at: datetime = field(default_factory=utc_now)
    summary: Dict[str, Any] = field(default_factory=dict)
    stages: List[Dict[str, Any]] = field(default_factory=list)
    tables: List[TableReportDetail] = field(default_factory=list)
    validations: List[ValidationResult] = field(default_factory=list)
    attachments: List[AttachmentMigrationRecord] = field(default_factory=list)
    id_mappings: List[RecordIdMapping] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at:
            return (self.generated_at - self.started_at).total_seconds()
        return None

    def to_dict(self, include_audit: bool = False) -> Dict[str, Any]:
        """
        Convert to dictionary representation.

        ID mappings and attachment records can be large; they are only
        included when ``include_audit`` is set.
        """
        data = {
            "execution_id": self.execution_id,
            "project_id": self.project_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "generated_at": self.generated_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "summary": self.summary,
            "stages": self.stages,
            "tables": [t.to_dict() for t in self.tables],
            "validations": [v.to_dict() for v in self.validations],
            "errors": self.errors,
            "warnings": self.warnings,
        }
        if include_audit:
            data["attachments"] = [a.to_dict() for a in self.attachments]
            data["id_mappings"] = [m.to_dict() for m in self.id_mappings]
        return data
