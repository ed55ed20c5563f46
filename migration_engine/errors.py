"""Error taxonomy for the migration engine."""

import re
from enum import Enum
from typing import Optional, Tuple


class MigrationEngineError(Exception):
    """Base class for all migration engine errors."""


class ConfigurationError(MigrationEngineError):
    """Invalid pipeline configuration."""


class DatabaseConnectionError(MigrationEngineError):
    """A source, target or staging database is unreachable."""

    def __init__(self, message: str, engine: Optional[str] = None):
        super().__init__(message)
        self.engine = engine


class SchemaDiscoveryError(MigrationEngineError):
    """Catalog introspection or document sampling failed."""


class TransformationConfigError(MigrationEngineError):
    """A transformation is missing parameters or cannot be rendered."""


class MappingError(MigrationEngineError):
    """Table or column mappings are inconsistent (e.g. cyclic dependencies)."""


class AttachmentMigrationError(MigrationEngineError):
    """An attachment could not be downloaded or uploaded."""


class ExecutionCancelled(MigrationEngineError):
    """Raised at a checkpoint after a cancel signal was received."""


class LoadErrorCategory(str, Enum):
    DUPLICATE_RECORD = "DuplicateRecord"
    INVALID_REFERENCE = "InvalidReference"
    MISSING_REQUIRED_DATA = "MissingRequiredData"
    PERMISSION_DENIED = "PermissionDenied"
    INVALID_FORMAT = "InvalidFormat"
    TIMEOUT = "Timeout"
    LIMIT_EXCEEDED = "LimitExceeded"
    CONNECTION_FAILED = "ConnectionFailed"
    DATABASE_ERROR = "DatabaseError"


# Order matters: the first matching pattern wins
_CATEGORY_PATTERNS = [
    (LoadErrorCategory.DUPLICATE_RECORD, re.compile(r"unique constraint|duplicate key|already exists", re.I)),
    (LoadErrorCategory.INVALID_REFERENCE, re.compile(r"foreign key constraint|referenced|references", re.I)),
    (LoadErrorCategory.MISSING_REQUIRED_DATA, re.compile(r"null value|not-null|required|cannot be null", re.I)),
    (LoadErrorCategory.PERMISSION_DENIED, re.compile(r"permission|privilege|authorization|not allowed|access", re.I)),
    (LoadErrorCategory.INVALID_FORMAT, re.compile(r"syntax|invalid|malformed|not valid", re.I)),
    (LoadErrorCategory.TIMEOUT, re.compile(r"timeout|timed out|too slow|deadlock", re.I)),
    (LoadErrorCategory.LIMIT_EXCEEDED, re.compile(r"limit|quota|exceeded|too many", re.I)),
    (LoadErrorCategory.CONNECTION_FAILED, re.compile(r"connection|connect|econnrefused", re.I)),
]

_CATEGORY_GUIDANCE = {
    LoadErrorCategory.DUPLICATE_RECORD: (
        "A record with the same key already exists in the target.",
        "Use the merge load strategy or truncate the target table first.",
    ),
    LoadErrorCategory.INVALID_REFERENCE: (
        "A row references a record that does not exist in the target.",
        "Check table dependencies so referenced tables load first.",
    ),
    LoadErrorCategory.MISSING_REQUIRED_DATA: (
        "A required column received no value.",
        "Add a default-value transformation or a column default.",
    ),
    LoadErrorCategory.PERMISSION_DENIED: (
        "The database user lacks privileges for this operation.",
        "Grant insert/update privileges on the target schema.",
    ),
    LoadErrorCategory.INVALID_FORMAT: (
        "A value or statement was malformed for the target engine.",
        "Review type-conversion and custom-expression transformations.",
    ),
    LoadErrorCategory.TIMEOUT: (
        "The database did not respond in time.",
        "Reduce the batch size or retry when the database is less busy.",
    ),
    LoadErrorCategory.LIMIT_EXCEEDED: (
        "A size or quota limit was exceeded.",
        "Reduce the batch size or widen the target column.",
    ),
    LoadErrorCategory.CONNECTION_FAILED: (
        "The database connection was lost.",
        "Check network access and connection settings.",
    ),
    LoadErrorCategory.DATABASE_ERROR: (
        "The database reported an error.",
        "Inspect the error details for the failing table.",
    ),
}


def categorize_error(message: str) -> LoadErrorCategory:
    """Map a database error message onto a load error category."""
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(message or ""):
            return category
    return LoadErrorCategory.DATABASE_ERROR


def describe_category(category: LoadErrorCategory) -> Tuple[str, str]:
    """Return (user message, suggested action) for a category."""
    return _CATEGORY_GUIDANCE[category]


class LoadError(MigrationEngineError):
    """Loading a table into the target failed."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        category: Optional[LoadErrorCategory] = None,
    ):
        super().__init__(message)
        self.table = table
        self.category = category or categorize_error(message)

    @property
    def user_message(self) -> str:
        return describe_category(self.category)[0]

    @property
    def suggestion(self) -> str:
        return describe_category(self.category)[1]

    @classmethod
    def from_exception(cls, error: Exception, table: Optional[str] = None) -> "LoadError":
        if isinstance(error, LoadError):
            return error
        return cls(str(error), table=table)

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "category": self.category.value,
            "message": str(self),
            "user_message": self.user_message,
            "suggestion": self.suggestion,
        }
