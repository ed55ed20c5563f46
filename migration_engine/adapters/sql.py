"""Relational adapter built on SQLAlchemy Core."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.engine import URL, Connection as SAConnection, Engine
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from ..errors import ConfigurationError, DatabaseConnectionError, SchemaDiscoveryError
from ..models.schema import ColumnInfo, Connection, DatabaseSchema, EngineType, TableInfo
from .base import DatabaseAdapter, LoadSession, Row

logger = logging.getLogger(__name__)

_DRIVERS = {
    EngineType.POSTGRES: "postgresql+psycopg2",
    EngineType.MYSQL: "mysql+pymysql",
    EngineType.SQLSERVER: "mssql+pyodbc",
}

_DEFAULT_PORTS = {
    EngineType.POSTGRES: 5432,
    EngineType.MYSQL: 3306,
    EngineType.SQLSERVER: 1433,
}

_DEFAULT_ODBC_DRIVER = "ODBC Driver 18 for SQL Server"

# Keeps IN lists under the SQL Server bound-parameter limit
_KEY_CHUNK_SIZE = 500

_DIALECT_ENGINES = {
    "postgresql": EngineType.POSTGRES,
    "mysql": EngineType.MYSQL,
    "mariadb": EngineType.MYSQL,
    "mssql": EngineType.SQLSERVER,
}


def build_url(connection: Connection) -> URL:
    """Build a SQLAlchemy URL; the password comes from the credentials reference."""
    query = {}
    if connection.engine_type == EngineType.SQLSERVER:
        query["driver"] = connection.options.get("odbc_driver", _DEFAULT_ODBC_DRIVER)

    return URL.create(
        drivername=connection.options.get("driver") or _DRIVERS[connection.engine_type],
        username=connection.username,
        password=connection.password,
        host=connection.host,
        port=connection.port or _DEFAULT_PORTS[connection.engine_type],
        database=connection.database,
        query=query,
    )


def engine_type_for_url(url: str) -> EngineType:
    """Engine family of a database URL (used for a separate staging database)."""
    backend = sa.engine.make_url(url).get_backend_name()
    if backend not in _DIALECT_ENGINES:
        raise ConfigurationError(f"Unsupported staging database backend: {backend}")
    return _DIALECT_ENGINES[backend]


def _type_name(sa_type, dialect) -> str:
    """Lowercase base type name without length or precision."""
    try:
        rendered = sa_type.compile(dialect=dialect)
    except SQLAlchemyError:
        rendered = getattr(sa_type, "__visit_name__", "text")
    return rendered.split("(")[0].strip().lower()


class SqlLoadSession(LoadSession):
    """Load session bound to one open transaction."""

    def __init__(self, adapter: "SqlAdapter", connection: SAConnection):
        self.adapter = adapter
        self.connection = connection

    def table(self, name: str, schema: Optional[str] = None) -> sa.Table:
        return self.adapter.reflect_table(name, schema=schema, bind=self.connection)

    def execute(self, statement, parameters=None):
        """Run a Core statement inside the session's transaction."""
        return self.connection.execute(statement, parameters)

    def truncate(self, table: str) -> None:
        target = self.table(table)
        result = self.connection.execute(sa.delete(target))
        logger.info(f"Cleared {table} ({result.rowcount} rows)")

    def delete_keys(self, table: str, key_column: str, keys: Sequence[Any]) -> int:
        target = self.table(table)
        deleted = 0
        keys = list(keys)
        for start in range(0, len(keys), _KEY_CHUNK_SIZE):
            chunk = keys[start:start + _KEY_CHUNK_SIZE]
            result = self.connection.execute(
                sa.delete(target).where(target.c[key_column].in_(chunk))
            )
            deleted += max(result.rowcount, 0)
        return deleted

    def load_batch(
        self,
        table: str,
        rows: List[Row],
        key_column: Optional[str] = None
    ) -> List[Any]:
        if not rows:
            return []

        target = self.table(table)
        if key_column is None:
            primary_key = list(target.primary_key.columns)
            key_column = primary_key[0].name if primary_key else None

        if key_column is None:
            self.connection.execute(sa.insert(target), rows)
            return [None] * len(rows)

        if key_column in rows[0]:
            self.connection.execute(sa.insert(target), rows)
            return [row.get(key_column) for row in rows]

        dialect = self.connection.dialect
        if getattr(dialect, "insert_executemany_returning_sort_by_parameter_order", False):
            result = self.connection.execute(
                sa.insert(target).returning(target.c[key_column], sort_by_parameter_order=True),
                rows,
            )
            return list(result.scalars())

        # Fall back to one statement per row to learn generated keys
        keys = []
        for row in rows:
            result = self.connection.execute(sa.insert(target), row)
            inserted = result.inserted_primary_key
            keys.append(inserted[0] if inserted else None)
        return keys


class SqlAdapter(DatabaseAdapter):
    """
    Adapter for PostgreSQL, MySQL and SQL Server.

    An already-built SQLAlchemy engine may be injected; injected engines
    are left open on close so the caller can share them.
    """

    supports_sql = True

    def __init__(
        self,
        connection: Connection,
        engine: Optional[Engine] = None,
        url: Optional[str] = None
    ):
        """
        Initialize the adapter.

        Args:
            connection: Connection details for the database
            engine: Existing engine to use instead of building one
            url: Explicit database URL (overrides the connection fields)
        """
        if not connection.engine_type.is_relational:
            raise ConfigurationError(
                f"SqlAdapter cannot serve {connection.engine_type.value} connections"
            )
        super().__init__(connection)
        self._engine = engine
        self._owns_engine = engine is None
        self._url = url
        self._tables: Dict[Tuple[Optional[str], str], sa.Table] = {}

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            url = self._url or build_url(self.connection)
            self._engine = sa.create_engine(url, pool_pre_ping=True)
            logger.debug(f"Created engine for {self.connection.engine_type.value}:{self.connection.database}")
        return self._engine

    @property
    def schema(self) -> Optional[str]:
        """Schema tables live in; None means the database default."""
        return self.connection.schema

    @property
    def preparer(self):
        return self.engine.dialect.identifier_preparer

    def close(self) -> None:
        self._tables = {}
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()
            self._engine = None

    def test_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(sa.text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Connection test failed for {self.connection.database}: {e}")
            return False

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover_schema(self) -> DatabaseSchema:
        logger.info(f"Discovering schema of {self.connection.engine_type.value}:{self.connection.database}")
        try:
            inspector = sa.inspect(self.engine)
            tables = [
                self._describe_table(inspector, name)
                for name in sorted(inspector.get_table_names(schema=self.schema))
            ]
        except (OperationalError, InterfaceError) as e:
            raise DatabaseConnectionError(
                f"Cannot connect to {self.connection.database}: {e}",
                engine=self.connection.engine_type.value,
            ) from e
        except SQLAlchemyError as e:
            raise SchemaDiscoveryError(f"Schema discovery failed for {self.connection.database}: {e}") from e

        logger.info(f"Discovered {len(tables)} tables")
        return DatabaseSchema(
            engine_type=self.connection.engine_type,
            database=self.connection.database,
            tables=tables,
        )

    def _describe_table(self, inspector, name: str) -> TableInfo:
        primary_key = set(
            inspector.get_pk_constraint(name, schema=self.schema).get("constrained_columns") or []
        )
        columns = []
        for column in inspector.get_columns(name, schema=self.schema):
            is_primary_key = column["name"] in primary_key
            length = getattr(column["type"], "length", None)
            default = column.get("default")
            columns.append(ColumnInfo(
                name=column["name"],
                data_type=_type_name(column["type"], self.engine.dialect),
                nullable=bool(column.get("nullable", True)) and not is_primary_key,
                is_primary_key=is_primary_key,
                max_length=length if isinstance(length, int) else None,
                default=str(default) if default is not None else None,
            ))
        return TableInfo(name=name, columns=columns, schema=self.schema)

    def reflect_table(
        self,
        name: str,
        schema: Optional[str] = None,
        bind=None
    ) -> sa.Table:
        """Reflect (and cache) a table definition."""
        schema = schema or self.schema
        key = (schema, name)
        if key not in self._tables:
            self._tables[key] = sa.Table(
                name,
                sa.MetaData(),
                autoload_with=bind if bind is not None else self.engine,
                schema=schema,
            )
        return self._tables[key]

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def primary_key(self, table: str) -> Optional[str]:
        columns = list(self.reflect_table(table).primary_key.columns)
        return columns[0].name if columns else None

    def extract_batch(self, table: str, offset: int = 0, limit: int = 100) -> List[Row]:
        source = self.reflect_table(table)
        order = list(source.primary_key.columns) or list(source.columns)[:1]
        query = sa.select(source).order_by(*order).offset(offset).limit(limit)
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def stream_rows(
        self,
        table: str,
        batch_size: int,
        columns: Optional[Sequence[str]] = None
    ) -> Iterator[List[Row]]:
        source = self.reflect_table(table)
        if columns:
            query = sa.select(*[source.c[name] for name in columns])
        else:
            query = sa.select(source)

        with self.engine.connect() as conn:
            result = conn.execution_options(
                stream_results=True,
                max_row_buffer=batch_size,
            ).execute(query)
            for partition in result.mappings().partitions(batch_size):
                yield [dict(row) for row in partition]

    def row_count(self, table: str, schema: Optional[str] = None) -> int:
        query = sa.select(sa.func.count()).select_from(sa.table(table, schema=schema or self.schema))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def null_count(self, table: str, column: str, schema: Optional[str] = None) -> int:
        source = sa.table(table, sa.column(column), schema=schema or self.schema)
        query = sa.select(sa.func.count()).select_from(source).where(source.c[column].is_(None))
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    def orphan_count(
        self,
        table: str,
        column: str,
        parent_table: str,
        parent_column: str,
        batch_size: int = 1000
    ) -> int:
        child = sa.table(table, sa.column(column), schema=self.schema).alias("child")
        parent = sa.table(parent_table, sa.column(parent_column), schema=self.schema).alias("parent")
        query = (
            sa.select(sa.func.count())
            .select_from(child)
            .where(child.c[column].is_not(None))
            .where(~sa.exists().where(parent.c[parent_column] == child.c[column]))
        )
        with self.engine.connect() as conn:
            return conn.execute(query).scalar_one()

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[SqlLoadSession]:
        with self.engine.begin() as conn:
            yield SqlLoadSession(self, conn)

    def update_value(self, table: str, key_column: str, key: Any, column: str, value: Any) -> bool:
        target = self.reflect_table(table)
        if column not in target.c or key_column not in target.c:
            return False
        with self.engine.begin() as conn:
            result = conn.execute(
                sa.update(target).where(target.c[key_column] == key).values({column: value})
            )
        return result.rowcount > 0
