"""Schema and mapping models shared by every engine family."""

import os
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class EngineType(str, Enum):
    """Database engine families the migration engine can talk to."""
    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLSERVER = "sqlserver"
    MONGODB = "mongodb"
    COUCHDB = "couchdb"

    @classmethod
    def _missing_(cls, value):
        aliases = {
            "postgresql": cls.POSTGRES,
            "pg": cls.POSTGRES,
            "mariadb": cls.MYSQL,
            "mssql": cls.SQLSERVER,
            "sql_server": cls.SQLSERVER,
            "mongo": cls.MONGODB,
            "couch": cls.COUCHDB,
        }
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
            return aliases.get(lowered)
        return None

    @property
    def is_relational(self) -> bool:
        return self in (EngineType.POSTGRES, EngineType.MYSQL, EngineType.SQLSERVER)

    @property
    def is_document_store(self) -> bool:
        return not self.is_relational


class ConnectionRole(str, Enum):
    """Which side of a migration a connection serves."""
    SOURCE = "source"
    TARGET = "target"


@dataclass(frozen=True)
class Connection:
    """
    Connection details for a source or target database.

    The password is never stored here: ``credentials_ref`` names the
    environment variable that holds it.
    """
    engine_type: EngineType
    database: str
    host: str = "localhost"
    port: Optional[int] = None
    username: Optional[str] = None
    credentials_ref: Optional[str] = None
    role: ConnectionRole = ConnectionRole.SOURCE
    schema: Optional[str] = None
    name: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    options: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    @property
    def password(self) -> Optional[str]:
        """Resolve the password from the referenced environment variable."""
        if not self.credentials_ref:
            return None
        return os.environ.get(self.credentials_ref)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation (secrets excluded)."""
        return {
            "id": self.id,
            "name": self.name,
            "engine_type": self.engine_type.value,
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "username": self.username,
            "credentials_ref": self.credentials_ref,
            "role": self.role.value,
            "schema": self.schema,
            "options": self.options,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Connection":
        """Create from dictionary representation."""
        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            name=data.get("name", ""),
            engine_type=EngineType(data.get("engine_type") or data.get("type")),
            host=data.get("host", "localhost"),
            port=data.get("port"),
            database=data.get("database", ""),
            username=data.get("username"),
            credentials_ref=data.get("credentials_ref"),
            role=ConnectionRole(data.get("role", "source")),
            schema=data.get("schema"),
            options=data.get("options", {}),
        )


@dataclass
class ColumnInfo:
    """Normalized column metadata."""
    name: str
    data_type: str
    nullable: bool = True
    is_primary_key: bool = False
    max_length: Optional[int] = None
    default: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data_type": self.data_type,
            "nullable": self.nullable,
            "is_primary_key": self.is_primary_key,
            "max_length": self.max_length,
            "default": self.default,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnInfo":
        return cls(
            name=data["name"],
            data_type=data.get("data_type", "text"),
            nullable=data.get("nullable", True),
            is_primary_key=data.get("is_primary_key", False),
            max_length=data.get("max_length"),
            default=data.get("default"),
        )


@dataclass
class TableInfo:
    """Normalized table metadata."""
    name: str
    columns: List[ColumnInfo] = field(default_factory=list)
    schema: Optional[str] = None

    @property
    def primary_key(self) -> Optional[str]:
        """Name of the first primary-key column, if any."""
        for column in self.columns:
            if column.is_primary_key:
                return column.name
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "schema": self.schema,
            "columns": [c.to_dict() for c in self.columns],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableInfo":
        return cls(
            name=data["name"],
            schema=data.get("schema"),
            columns=[ColumnInfo.from_dict(c) for c in data.get("columns", [])],
        )


@dataclass
class DatabaseSchema:
    """Discovered schema of one database."""
    engine_type: EngineType
    database: str = ""
    tables: List[TableInfo] = field(default_factory=list)

    def get_table(self, name: str) -> Optional[TableInfo]:
        """Get a table by name, falling back to a case-insensitive match."""
        for table in self.tables:
            if table.name == name:
                return table
        lowered = name.lower()
        for table in self.tables:
            if table.name.lower() == lowered:
                return table
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "engine_type": self.engine_type.value,
            "database": self.database,
            "tables": [t.to_dict() for t in self.tables],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseSchema":
        return cls(
            engine_type=EngineType(data["engine_type"]),
            database=data.get("database", ""),
            tables=[TableInfo.from_dict(t) for t in data.get("tables", [])],
        )


def _snake_case(name: str) -> str:
    """Convert camelCase parameter names (targetType) to snake_case."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


class TransformationType(str, Enum):
    """Column transformation variants."""
    TYPE_CONVERSION = "type-conversion"
    CUSTOM_EXPRESSION = "custom-expression"
    EXCLUDE_COLUMN = "exclude-column"
    DEFAULT_VALUE = "default-value"
    CONCATENATE = "concatenate"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    TRIM = "trim"
    DATE_FORMAT = "date-format"
    REPLACE = "replace"

    @classmethod
    def _missing_(cls, value):
        # Accept "TYPE_CONVERSION" / "type_conversion" spellings
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            if normalized in ("custom-sql", "expression"):
                return cls.CUSTOM_EXPRESSION
            for member in cls:
                if member.value == normalized:
                    return member
        return None


@dataclass
class TransformationConfig:
    """A single column transformation with its typed parameters."""
    type: TransformationType
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def excludes_column(self) -> bool:
        return self.type == TransformationType.EXCLUDE_COLUMN

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "parameters": dict(self.parameters)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransformationConfig":
        raw_type = str(data.get("type", "")).strip().lower().replace("_", "-")
        parameters = {
            _snake_case(key): value
            for key, value in (data.get("parameters") or data.get("params") or {}).items()
        }

        if raw_type == "case-change":
            case = str(parameters.pop("case", "upper")).lower()
            raw_type = "uppercase" if case.startswith("upper") else "lowercase"

        return cls(type=TransformationType(raw_type), parameters=parameters)


@dataclass
class ColumnMapping:
    """Mapping from a source column to a target column."""
    source_column: str
    target_column: str
    source_type: Optional[str] = None
    target_type: Optional[str] = None
    nullable: bool = True
    transformation: Optional[TransformationConfig] = None
    default_value: Optional[Any] = None
    # Table (mapping id, source or target name) whose key this column holds
    references: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def is_excluded(self) -> bool:
        return self.transformation is not None and self.transformation.excludes_column

    @property
    def is_transformed(self) -> bool:
        return self.transformation is not None and not self.transformation.excludes_column

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_column": self.source_column,
            "target_column": self.target_column,
            "source_type": self.source_type,
            "target_type": self.target_type,
            "nullable": self.nullable,
            "transformation": self.transformation.to_dict() if self.transformation else None,
            "default_value": self.default_value,
            "references": self.references,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColumnMapping":
        from ..errors import TransformationConfigError

        transformation = data.get("transformation")
        transformations = data.get("transformations")
        if transformations:
            if len(transformations) > 1:
                raise TransformationConfigError(
                    f"Column {data.get('source_column')} has {len(transformations)} "
                    f"transformations; at most one may be active"
                )
            transformation = transformations[0]

        return cls(
            id=data.get("id") or str(uuid.uuid4()),
            source_column=data["source_column"],
            target_column=data.get("target_column") or data["source_column"],
            source_type=data.get("source_type"),
            target_type=data.get("target_type"),
            nullable=data.get("nullable", True),
            transformation=TransformationConfig.from_dict(transformation) if transformation else None,
            default_value=data.get("default_value"),
            references=data.get("references"),
        )


class TableKind(str, Enum):
    """Role of a table in the load order."""
    DIMENSION = "dimension"
    FACT = "fact"


@dataclass
class TableMapping:
    """Mapping from a source table to a target table."""
    source_table: str
    target_table: str
    id: str = ""
    load_order: int = 0
    depends_on: List[str] = field(default_factory=list)
    kind: Optional[TableKind] = None

    def __post_init__(self):
        if not self.id:
            self.id = self.source_table
        if isinstance(self.depends_on, str):
            self.depends_on = [self.depends_on]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_table": self.source_table,
            "target_table": self.target_table,
            "load_order": self.load_order,
            "depends_on": list(self.depends_on),
            "kind": self.kind.value if self.kind else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TableMapping":
        kind = data.get("kind")
        return cls(
            id=data.get("id", ""),
            source_table=data["source_table"],
            target_table=data.get("target_table") or data["source_table"],
            load_order=data.get("load_order", 0),
            depends_on=data.get("depends_on") or [],
            kind=TableKind(kind) if kind else None,
        )
