"""Cross-engine type compatibility matrix."""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from ..models.schema import ColumnInfo, EngineType

PG = EngineType.POSTGRES
MY = EngineType.MYSQL
MS = EngineType.SQLSERVER
MONGO = EngineType.MONGODB
COUCH = EngineType.COUCHDB

# Type names accepted in generated DDL and CAST expressions
_TYPE_NAME_RE = re.compile(
    r"^[A-Za-z][A-Za-z0-9_]*( [A-Za-z][A-Za-z0-9_]*)*"
    r"(\(\s*(\d+|MAX)\s*(,\s*\d+\s*)?\))?"
    r"( [A-Za-z][A-Za-z0-9_]*)*$",
    re.IGNORECASE,
)

_TYPE_ALIASES = {
    "character varying": "varchar",
    "character": "char",
    "int4": "integer",
    "int8": "bigint",
    "int2": "smallint",
    "bool": "boolean",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "time without time zone": "time",
    "float8": "double precision",
    "float4": "real",
    "double": "double precision",
    "objectid": "objectid",
    "str": "string",
    "int": "int",
    "long": "bigint",
}

# Lookups retry with these names before falling back to text
_EQUIVALENT_TYPES = {
    "int": "integer",
    "integer": "int",
    "decimal": "numeric",
    "numeric": "decimal",
    "datetime": "timestamp",
    "timestamp": "datetime",
    "double precision": "float",
    "float": "double precision",
}

_CHARACTER_TYPES = {"varchar", "nvarchar", "char", "nchar"}

_TEXT_FALLBACK = {
    PG: "TEXT",
    MY: "LONGTEXT",
    MS: "NVARCHAR(MAX)",
    MONGO: "string",
    COUCH: "string",
}


@dataclass(frozen=True)
class TypeMapping:
    """How a source type is represented on a target engine."""
    source_type: str
    target_type: str
    requires_transformation: bool = False
    transformation_hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_type": self.source_type,
            "target_type": self.target_type,
            "requires_transformation": self.requires_transformation,
            "transformation_hint": self.transformation_hint,
        }


def _table(*rows) -> Dict[str, TypeMapping]:
    entries = {}
    for row in rows:
        source_type, target_type = row[0], row[1]
        hint = row[2] if len(row) > 2 else None
        entries[source_type] = TypeMapping(
            source_type=source_type,
            target_type=target_type,
            requires_transformation=hint is not None,
            transformation_hint=hint,
        )
    return entries


_DOCUMENT_TO_PG = _table(
    ("string", "TEXT"),
    ("objectid", "VARCHAR(24)"),
    ("integer", "BIGINT"),
    ("number", "DOUBLE PRECISION"),
    ("double", "DOUBLE PRECISION"),
    ("decimal", "NUMERIC"),
    ("boolean", "BOOLEAN"),
    ("date", "TIMESTAMP"),
    ("object", "JSONB", "Serialize nested document to JSON"),
    ("array", "JSONB", "Serialize array to JSON"),
)
_DOCUMENT_TO_MY = _table(
    ("string", "LONGTEXT"),
    ("objectid", "VARCHAR(24)"),
    ("integer", "BIGINT"),
    ("number", "DOUBLE"),
    ("double", "DOUBLE"),
    ("decimal", "DECIMAL(38,10)"),
    ("boolean", "TINYINT(1)"),
    ("date", "DATETIME"),
    ("object", "JSON", "Serialize nested document to JSON"),
    ("array", "JSON", "Serialize array to JSON"),
)
_DOCUMENT_TO_MS = _table(
    ("string", "NVARCHAR(MAX)"),
    ("objectid", "NVARCHAR(24)"),
    ("integer", "BIGINT"),
    ("number", "FLOAT"),
    ("double", "FLOAT"),
    ("decimal", "DECIMAL(38,10)"),
    ("boolean", "BIT"),
    ("date", "DATETIME2"),
    ("object", "NVARCHAR(MAX)", "Serialize nested document to JSON"),
    ("array", "NVARCHAR(MAX)", "Serialize array to JSON"),
)

TYPE_COMPATIBILITY: Dict[Tuple[EngineType, EngineType], Dict[str, TypeMapping]] = {
    (PG, MS): _table(
        ("text", "NVARCHAR(MAX)"),
        ("varchar", "NVARCHAR"),
        ("char", "NCHAR"),
        ("smallint", "SMALLINT"),
        ("integer", "INT"),
        ("bigint", "BIGINT"),
        ("numeric", "DECIMAL(38,10)"),
        ("real", "REAL"),
        ("double precision", "FLOAT"),
        ("boolean", "BIT", "CAST(CASE WHEN column THEN 1 ELSE 0 END AS BIT)"),
        ("timestamp", "DATETIME2"),
        ("timestamptz", "DATETIMEOFFSET"),
        ("date", "DATE"),
        ("time", "TIME"),
        ("uuid", "UNIQUEIDENTIFIER"),
        ("bytea", "VARBINARY(MAX)"),
        ("json", "NVARCHAR(MAX)", "Convert JSON to string"),
        ("jsonb", "NVARCHAR(MAX)", "Convert JSON to string"),
    ),
    (PG, MY): _table(
        ("text", "LONGTEXT"),
        ("varchar", "VARCHAR"),
        ("char", "CHAR"),
        ("smallint", "SMALLINT"),
        ("integer", "INT"),
        ("bigint", "BIGINT"),
        ("numeric", "DECIMAL(38,10)"),
        ("real", "FLOAT"),
        ("double precision", "DOUBLE"),
        ("boolean", "TINYINT(1)", "CAST(column AS UNSIGNED)"),
        ("timestamp", "DATETIME"),
        ("timestamptz", "DATETIME", "Convert to UTC before loading"),
        ("date", "DATE"),
        ("time", "TIME"),
        ("uuid", "CHAR(36)"),
        ("bytea", "LONGBLOB"),
        ("json", "JSON"),
        ("jsonb", "JSON"),
    ),
    (MS, PG): _table(
        ("nvarchar", "VARCHAR"),
        ("varchar", "VARCHAR"),
        ("nchar", "CHAR"),
        ("char", "CHAR"),
        ("ntext", "TEXT"),
        ("text", "TEXT"),
        ("tinyint", "SMALLINT"),
        ("smallint", "SMALLINT"),
        ("int", "INTEGER"),
        ("bigint", "BIGINT"),
        ("decimal", "NUMERIC"),
        ("numeric", "NUMERIC"),
        ("money", "NUMERIC(19,4)"),
        ("float", "DOUBLE PRECISION"),
        ("real", "REAL"),
        ("bit", "BOOLEAN", "CASE WHEN column = 1 THEN TRUE ELSE FALSE END"),
        ("datetime", "TIMESTAMP"),
        ("datetime2", "TIMESTAMP"),
        ("smalldatetime", "TIMESTAMP"),
        ("datetimeoffset", "TIMESTAMPTZ"),
        ("date", "DATE"),
        ("time", "TIME"),
        ("uniqueidentifier", "UUID"),
        ("varbinary", "BYTEA"),
    ),
    (MS, MY): _table(
        ("nvarchar", "VARCHAR"),
        ("varchar", "VARCHAR"),
        ("nchar", "CHAR"),
        ("char", "CHAR"),
        ("ntext", "LONGTEXT"),
        ("text", "LONGTEXT"),
        ("tinyint", "TINYINT UNSIGNED"),
        ("smallint", "SMALLINT"),
        ("int", "INT"),
        ("bigint", "BIGINT"),
        ("decimal", "DECIMAL(38,10)"),
        ("money", "DECIMAL(19,4)"),
        ("float", "DOUBLE"),
        ("bit", "TINYINT(1)"),
        ("datetime", "DATETIME"),
        ("datetime2", "DATETIME"),
        ("datetimeoffset", "DATETIME", "Convert to UTC before loading"),
        ("date", "DATE"),
        ("time", "TIME"),
        ("uniqueidentifier", "CHAR(36)"),
        ("varbinary", "LONGBLOB"),
    ),
    (MY, PG): _table(
        ("varchar", "VARCHAR"),
        ("char", "CHAR"),
        ("text", "TEXT"),
        ("longtext", "TEXT"),
        ("mediumtext", "TEXT"),
        ("tinyint", "BOOLEAN", "column = 1"),
        ("smallint", "SMALLINT"),
        ("int", "INTEGER"),
        ("bigint", "BIGINT"),
        ("decimal", "NUMERIC"),
        ("float", "REAL"),
        ("double precision", "DOUBLE PRECISION"),
        ("datetime", "TIMESTAMP"),
        ("timestamp", "TIMESTAMP"),
        ("date", "DATE"),
        ("time", "TIME"),
        ("json", "JSONB"),
        ("blob", "BYTEA"),
        ("enum", "VARCHAR", "Enumerations become plain strings"),
    ),
    (MY, MS): _table(
        ("varchar", "NVARCHAR"),
        ("char", "NCHAR"),
        ("text", "NVARCHAR(MAX)"),
        ("longtext", "NVARCHAR(MAX)"),
        ("mediumtext", "NVARCHAR(MAX)"),
        ("tinyint", "BIT", "CAST(column AS BIT)"),
        ("smallint", "SMALLINT"),
        ("int", "INT"),
        ("bigint", "BIGINT"),
        ("decimal", "DECIMAL(38,10)"),
        ("float", "REAL"),
        ("double precision", "FLOAT"),
        ("datetime", "DATETIME2"),
        ("timestamp", "DATETIME2"),
        ("date", "DATE"),
        ("time", "TIME"),
        ("json", "NVARCHAR(MAX)", "Convert JSON to string"),
        ("blob", "VARBINARY(MAX)"),
        ("enum", "NVARCHAR", "Enumerations become plain strings"),
    ),
    (MONGO, PG): _DOCUMENT_TO_PG,
    (MONGO, MY): _DOCUMENT_TO_MY,
    (MONGO, MS): _DOCUMENT_TO_MS,
    (COUCH, PG): _DOCUMENT_TO_PG,
    (COUCH, MY): _DOCUMENT_TO_MY,
    (COUCH, MS): _DOCUMENT_TO_MS,
}


def normalize_type(data_type: Optional[str]) -> str:
    """Lowercase a type name and drop length, precision and modifiers."""
    if not data_type:
        return ""
    value = re.sub(r"\(.*?\)", "", data_type.strip().lower())
    value = re.sub(r"\b(unsigned|zerofill)\b", "", value)
    value = re.sub(r"\s+", " ", value).strip()
    return _TYPE_ALIASES.get(value, value)


def is_valid_type_name(type_name: Optional[str]) -> bool:
    """Check a type name is safe to place in DDL or a CAST expression."""
    return bool(type_name) and bool(_TYPE_NAME_RE.match(type_name.strip()))


def text_type_for(engine: EngineType) -> str:
    return _TEXT_FALLBACK[engine]


def lookup_type(
    source_engine: EngineType,
    target_engine: EngineType,
    source_type: str
) -> TypeMapping:
    """
    Find how a source type maps to the target engine.

    Same-engine pairs and document-store targets keep the source type.
    Unknown pairs fall back to a lossless text type.
    """
    normalized = normalize_type(source_type)

    if source_engine == target_engine or target_engine.is_document_store:
        return TypeMapping(source_type=normalized, target_type=source_type or normalized)

    entries = TYPE_COMPATIBILITY.get((source_engine, target_engine), {})
    mapping = entries.get(normalized)
    if mapping is None and normalized in _EQUIVALENT_TYPES:
        mapping = entries.get(_EQUIVALENT_TYPES[normalized])
    if mapping is not None:
        return mapping

    return TypeMapping(
        source_type=normalized,
        target_type=_TEXT_FALLBACK[target_engine],
        requires_transformation=False,
        transformation_hint="Unknown type pair; stored as text",
    )


def resolve_column_type(
    source_engine: EngineType,
    target_engine: EngineType,
    column: ColumnInfo
) -> str:
    """Concrete target DDL type for a column, including its length."""
    mapping = lookup_type(source_engine, target_engine, column.data_type)
    target_type = mapping.target_type

    if target_engine.is_document_store:
        return target_type

    if source_engine == target_engine and "(" not in target_type:
        target_type = target_type.upper()

    if "(" in target_type or normalize_type(target_type) not in _CHARACTER_TYPES:
        return target_type

    if column.max_length and column.max_length > 0:
        return f"{target_type}({column.max_length})"
    if target_engine == PG:
        return target_type
    # MySQL and SQL Server need an explicit length
    return _TEXT_FALLBACK[target_engine]
