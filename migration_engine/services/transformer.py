"""Transformation engine: in-process value transforms and SQL push-down."""

import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Iterable, Optional

import sqlalchemy as sa
from dateutil import parser as date_parser
from sqlalchemy.dialects import mssql, mysql, postgresql
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import UserDefinedType

from ..errors import TransformationConfigError
from ..models.schema import (
    ColumnMapping,
    EngineType,
    TransformationConfig,
    TransformationType,
)
from .type_matrix import is_valid_type_name, lookup_type, normalize_type

logger = logging.getLogger(__name__)

_INTEGER_TYPES = {"int", "integer", "bigint", "smallint", "tinyint", "serial", "bigserial", "mediumint"}
_FLOAT_TYPES = {"float", "real", "double precision", "double"}
_DECIMAL_TYPES = {"numeric", "decimal", "money", "smallmoney"}
_BOOLEAN_TYPES = {"boolean", "bit"}
_TIMESTAMP_TYPES = {"timestamp", "timestamptz", "datetime", "datetime2", "smalldatetime", "datetimeoffset"}
_STRING_TYPES = {
    "text", "varchar", "nvarchar", "char", "nchar", "ntext",
    "longtext", "mediumtext", "tinytext", "string", "uuid", "uniqueidentifier",
}

_TRUE_STRINGS = {"true", "t", "yes", "y", "1", "on"}
_FALSE_STRINGS = {"false", "f", "no", "n", "0", "off", ""}

_REQUIRED_PARAMETERS = {
    TransformationType.TYPE_CONVERSION: ("target_type",),
    TransformationType.CUSTOM_EXPRESSION: ("expression",),
    TransformationType.DEFAULT_VALUE: ("value",),
    TransformationType.CONCATENATE: ("columns",),
    TransformationType.DATE_FORMAT: ("format",),
    TransformationType.REPLACE: ("find",),
}

# strftime directives translated per SQL dialect
_DATE_FORMAT_TOKENS = {
    EngineType.POSTGRES: {
        "%Y": "YYYY", "%y": "YY", "%m": "MM", "%d": "DD", "%H": "HH24", "%I": "HH12",
        "%M": "MI", "%S": "SS", "%p": "AM", "%b": "Mon", "%B": "Month", "%a": "Dy",
        "%A": "Day", "%j": "DDD", "%f": "US", "%%": "%",
    },
    EngineType.MYSQL: {
        "%Y": "%Y", "%y": "%y", "%m": "%m", "%d": "%d", "%H": "%H", "%I": "%h",
        "%M": "%i", "%S": "%s", "%p": "%p", "%b": "%b", "%B": "%M", "%a": "%a",
        "%A": "%W", "%j": "%j", "%f": "%f", "%%": "%%",
    },
    EngineType.SQLSERVER: {
        "%Y": "yyyy", "%y": "yy", "%m": "MM", "%d": "dd", "%H": "HH", "%I": "hh",
        "%M": "mm", "%S": "ss", "%p": "tt", "%b": "MMM", "%B": "MMMM", "%a": "ddd",
        "%A": "dddd", "%f": "ffffff", "%%": "%",
    },
}

_DIALECTS = {
    EngineType.POSTGRES: postgresql.dialect,
    EngineType.MYSQL: mysql.dialect,
    EngineType.SQLSERVER: mssql.dialect,
}


class SqlType(UserDefinedType):
    """A SQL type rendered verbatim from a validated type name."""

    cache_ok = True

    def __init__(self, name: str):
        self.name = name

    def get_col_spec(self, **kw):
        return self.name


def sql_dialect(engine: EngineType):
    """SQLAlchemy dialect used to render expressions for an engine."""
    if engine not in _DIALECTS:
        raise TransformationConfigError(f"{engine.value} does not support SQL push-down")
    return _DIALECTS[engine]()


def translate_date_format(fmt: str, engine: EngineType) -> str:
    """Translate a strftime format into the engine's formatting syntax."""
    tokens = _DATE_FORMAT_TOKENS.get(engine)
    if tokens is None:
        raise TransformationConfigError(f"date-format is not supported on {engine.value}")
    return re.sub(r"%.", lambda m: tokens.get(m.group(0), m.group(0)), fmt)


def is_text_type(type_name: Optional[str]) -> bool:
    """True for character and text types."""
    return normalize_type(type_name) in _STRING_TYPES


def _is_text_type(column: ColumnElement) -> bool:
    return is_text_type(getattr(column.type, "name", None))


class TransformEngine:
    """
    Engine for applying column transformations.

    Each transformation has two renderings:
    - an in-process value transform used by previews and dry runs
    - a SQL expression executed by the database during the transform stage
    """

    def __init__(self):
        """Initialize the transform engine."""
        self._value_transforms = self._register_value_transforms()
        self._sql_builders = self._register_sql_builders()

    def _register_value_transforms(self) -> Dict[TransformationType, Callable]:
        return {
            TransformationType.TYPE_CONVERSION: self._convert_value,
            TransformationType.CUSTOM_EXPRESSION: self._database_only,
            TransformationType.EXCLUDE_COLUMN: self._passthrough,
            TransformationType.DEFAULT_VALUE: self._default_value,
            TransformationType.CONCATENATE: self._concatenate,
            TransformationType.UPPERCASE: self._uppercase,
            TransformationType.LOWERCASE: self._lowercase,
            TransformationType.TRIM: self._trim,
            TransformationType.DATE_FORMAT: self._format_date,
            TransformationType.REPLACE: self._replace,
        }

    def _register_sql_builders(self) -> Dict[TransformationType, Callable]:
        return {
            TransformationType.TYPE_CONVERSION: self._sql_convert,
            TransformationType.CUSTOM_EXPRESSION: self._sql_custom,
            TransformationType.DEFAULT_VALUE: self._sql_default,
            TransformationType.CONCATENATE: self._sql_concatenate,
            TransformationType.UPPERCASE: lambda col, params, engine, resolve: sa.func.upper(col),
            TransformationType.LOWERCASE: lambda col, params, engine, resolve: sa.func.lower(col),
            TransformationType.TRIM: self._sql_trim,
            TransformationType.DATE_FORMAT: self._sql_date_format,
            TransformationType.REPLACE: self._sql_replace,
        }

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_config(self, config: TransformationConfig, column: Optional[str] = None) -> None:
        """
        Check a transformation has every parameter it needs.

        Raises:
            TransformationConfigError: describing the first problem found
        """
        where = f" on column {column}" if column else ""
        params = config.parameters

        for name in _REQUIRED_PARAMETERS.get(config.type, ()):
            if name not in params:
                raise TransformationConfigError(
                    f"{config.type.value}{where} requires parameter '{name}'"
                )

        if config.type == TransformationType.TYPE_CONVERSION:
            if not is_valid_type_name(str(params["target_type"])):
                raise TransformationConfigError(
                    f"Invalid target type {params['target_type']!r}{where}"
                )
        elif config.type == TransformationType.CUSTOM_EXPRESSION:
            expression = params["expression"]
            if not isinstance(expression, str) or not expression.strip():
                raise TransformationConfigError(f"custom-expression{where} requires a non-empty expression")
            if ";" in expression:
                raise TransformationConfigError(f"custom-expression{where} must be a single expression")
        elif config.type == TransformationType.CONCATENATE:
            columns = params["columns"]
            if not isinstance(columns, list) or not columns or not all(isinstance(c, str) for c in columns):
                raise TransformationConfigError(f"concatenate{where} requires a non-empty list of columns")
        elif config.type == TransformationType.DATE_FORMAT:
            if not isinstance(params["format"], str) or not params["format"]:
                raise TransformationConfigError(f"date-format{where} requires a format string")
        elif config.type == TransformationType.REPLACE:
            if not isinstance(params["find"], str) or not params["find"]:
                raise TransformationConfigError(f"replace{where} requires a non-empty search string")

    def validate_mappings(self, column_mappings: Iterable[ColumnMapping]) -> None:
        """Validate every transformation of a table's column mappings."""
        targets = set()
        for mapping in column_mappings:
            if mapping.transformation is not None:
                self.validate_config(mapping.transformation, mapping.source_column)
            if mapping.is_excluded:
                continue
            if mapping.target_column in targets:
                raise TransformationConfigError(
                    f"Target column {mapping.target_column} is mapped more than once"
                )
            targets.add(mapping.target_column)

    # ------------------------------------------------------------------
    # In-process transforms (preview / dry run)
    # ------------------------------------------------------------------

    def apply_value(
        self,
        value: Any,
        config: TransformationConfig,
        row: Optional[Dict[str, Any]] = None
    ) -> Any:
        """
        Apply a transformation to a single value.

        Args:
            value: Source value
            config: Transformation to apply
            row: Whole source row, needed by concatenate

        Returns:
            The transformed value; None for custom expressions, which
            only the database can evaluate

        Raises:
            ValueError: if the value cannot be converted
        """
        transform = self._value_transforms[config.type]
        return transform(value, config.parameters, row or {})

    def transform_row(
        self,
        row: Dict[str, Any],
        column_mappings: Iterable[ColumnMapping]
    ) -> Dict[str, Any]:
        """Build the target row for one source row. Excluded columns are dropped."""
        target = {}
        for mapping in column_mappings:
            if mapping.is_excluded:
                continue
            value = row.get(mapping.source_column)
            if mapping.transformation is not None:
                value = self.apply_value(value, mapping.transformation, row)
            target[mapping.target_column] = value
        return target

    def _passthrough(self, value, params, row):
        return value

    def _database_only(self, value, params, row):
        # Custom expressions are SQL; only the database can evaluate them
        return None

    def _default_value(self, value, params, row):
        if value is None or (isinstance(value, str) and value == ""):
            return params.get("value")
        return value

    def _concatenate(self, value, params, row):
        separator = params.get("separator", "")
        parts = [row.get(column) for column in params.get("columns", [])]
        return separator.join(str(part) for part in parts if part is not None)

    def _uppercase(self, value, params, row):
        return value.upper() if isinstance(value, str) else value

    def _lowercase(self, value, params, row):
        return value.lower() if isinstance(value, str) else value

    def _trim(self, value, params, row):
        return value.strip() if isinstance(value, str) else value

    def _replace(self, value, params, row):
        if not isinstance(value, str):
            return value
        return value.replace(params["find"], params.get("replace_with", ""))

    def _format_date(self, value, params, row):
        if value is None or value == "":
            return value
        parsed = value if isinstance(value, (datetime, date)) else date_parser.parse(str(value))
        return parsed.strftime(params["format"])

    def _convert_value(self, value, params, row):
        if value is None:
            return None

        target = normalize_type(params["target_type"])

        if target in _INTEGER_TYPES:
            if isinstance(value, bool):
                return int(value)
            if isinstance(value, (int, float, Decimal)):
                return int(value)
            text = str(value).strip()
            try:
                return int(text)
            except ValueError:
                return int(float(text))

        if target in _FLOAT_TYPES:
            return float(value)

        if target in _DECIMAL_TYPES:
            try:
                return Decimal(str(value).strip())
            except InvalidOperation as e:
                raise ValueError(f"Cannot convert {value!r} to {target}") from e

        if target in _BOOLEAN_TYPES:
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float, Decimal)):
                return value != 0
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            raise ValueError(f"Cannot convert {value!r} to boolean")

        if target == "date":
            if isinstance(value, datetime):
                return value.date()
            if isinstance(value, date):
                return value
            return date_parser.parse(str(value)).date()

        if target in _TIMESTAMP_TYPES:
            if isinstance(value, datetime):
                return value
            if isinstance(value, date):
                return datetime(value.year, value.month, value.day)
            return date_parser.parse(str(value))

        if target == "time":
            if isinstance(value, datetime):
                return value.time()
            return date_parser.parse(str(value)).time()

        if target in _STRING_TYPES:
            if isinstance(value, (datetime, date)):
                return value.isoformat()
            return str(value)

        return value

    # ------------------------------------------------------------------
    # SQL push-down
    # ------------------------------------------------------------------

    def build_clause(
        self,
        column: ColumnElement,
        config: TransformationConfig,
        engine: EngineType,
        resolve: Optional[Callable[[str], ColumnElement]] = None,
        preparer=None
    ) -> Optional[ColumnElement]:
        """
        Build a SQLAlchemy expression for a transformation.

        Literal parameters are bound, never interpolated. Returns None for
        exclude-column, which has no SQL rendering.

        Args:
            column: Column the transformation reads
            config: Transformation to render
            engine: Engine whose SQL syntax to target
            resolve: Looks up sibling columns by name (concatenate)
            preparer: Identifier preparer used to quote the custom-expression placeholder
        """
        if config.type == TransformationType.EXCLUDE_COLUMN:
            return None
        if not engine.is_relational:
            raise TransformationConfigError(f"{engine.value} does not support SQL push-down")

        self.validate_config(config)
        builder = self._sql_builders[config.type]
        resolve = resolve or sa.column
        if config.type == TransformationType.CUSTOM_EXPRESSION:
            return self._sql_custom(column, config.parameters, engine, resolve, preparer)
        return builder(column, config.parameters, engine, resolve)

    def to_sql_expression(
        self,
        column_ref: str,
        config: TransformationConfig,
        target_engine: EngineType
    ) -> str:
        """Render a transformation as SQL text for the target engine."""
        clause = self.build_clause(sa.column(column_ref), config, target_engine)
        if clause is None:
            return ""
        compiled = clause.compile(
            dialect=sql_dialect(target_engine),
            compile_kwargs={"literal_binds": True},
        )
        return str(compiled)

    def _sql_convert(self, column, params, engine, resolve):
        return sa.cast(column, SqlType(str(params["target_type"]).strip()))

    def _sql_custom(self, column, params, engine, resolve, preparer=None):
        preparer = preparer or sql_dialect(engine).identifier_preparer
        quoted = preparer.quote(column.name)
        return sa.literal_column(params["expression"].replace("{column}", quoted))

    def _sql_default(self, column, params, engine, resolve):
        value = sa.literal(params["value"])
        if _is_text_type(column):
            return sa.func.coalesce(sa.func.nullif(column, ""), value)
        return sa.func.coalesce(column, value)

    def _sql_concatenate(self, column, params, engine, resolve):
        # concat_ws skips NULL parts together with their separator
        separator = sa.literal(params.get("separator", ""))
        return sa.func.concat_ws(separator, *[resolve(name) for name in params["columns"]])

    def _sql_trim(self, column, params, engine, resolve):
        if engine == EngineType.SQLSERVER:
            return sa.func.ltrim(sa.func.rtrim(column))
        return sa.func.trim(column)

    def _sql_date_format(self, column, params, engine, resolve):
        fmt = sa.literal(translate_date_format(params["format"], engine))
        if engine == EngineType.POSTGRES:
            return sa.func.to_char(column, fmt)
        if engine == EngineType.MYSQL:
            return sa.func.date_format(column, fmt)
        return sa.func.format(column, fmt)

    def _sql_replace(self, column, params, engine, resolve):
        return sa.func.replace(
            column,
            sa.literal(params["find"]),
            sa.literal(params.get("replace_with", "")),
        )

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def suggest_transformation(
        self,
        source_engine: EngineType,
        target_engine: EngineType,
        source_type: Optional[str],
        target_type: Optional[str] = None
    ) -> Optional[TransformationConfig]:
        """Suggest a type conversion when the type pair needs one."""
        if not source_type:
            return None

        mapping = lookup_type(source_engine, target_engine, source_type)
        if mapping.requires_transformation:
            return TransformationConfig(
                type=TransformationType.TYPE_CONVERSION,
                parameters={
                    "target_type": target_type or mapping.target_type,
                    "hint": mapping.transformation_hint,
                },
            )

        if target_type and target_engine.is_relational:
            expected = normalize_type(mapping.target_type)
            if normalize_type(target_type) not in (expected, normalize_type(source_type)):
                return TransformationConfig(
                    type=TransformationType.TYPE_CONVERSION,
                    parameters={"target_type": target_type},
                )
        return None


def describe_transformation(config: Optional[TransformationConfig]) -> str:
    """Short human-readable description used by previews and reports."""
    if config is None:
        return "Direct copy"
    params = config.parameters
    descriptions = {
        TransformationType.TYPE_CONVERSION: lambda: f"Convert to {params.get('target_type')}",
        TransformationType.CUSTOM_EXPRESSION: lambda: f"Expression: {params.get('expression')}",
        TransformationType.EXCLUDE_COLUMN: lambda: "Excluded",
        TransformationType.DEFAULT_VALUE: lambda: f"Default: {params.get('value')!r}",
        TransformationType.CONCATENATE: lambda: "Concatenate " + ", ".join(params.get("columns", [])),
        TransformationType.UPPERCASE: lambda: "Uppercase",
        TransformationType.LOWERCASE: lambda: "Lowercase",
        TransformationType.TRIM: lambda: "Trim whitespace",
        TransformationType.DATE_FORMAT: lambda: f"Format date as {params.get('format')}",
        TransformationType.REPLACE: lambda: f"Replace {params.get('find')!r}",
    }
    return descriptions[config.type]()
