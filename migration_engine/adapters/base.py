"""Capability interface every database engine adapter implements."""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, ContextManager, Dict, Iterator, List, Optional, Sequence

from ..models.schema import Connection, DatabaseSchema

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


@dataclass
class AttachmentRef:
    """A binary attachment stored alongside a source document."""
    table: str
    document_id: str
    name: str
    content_type: Optional[str] = None
    size: Optional[int] = None
    source_url: Optional[str] = None


class LoadSession(ABC):
    """
    Writes against one target inside a single transaction.

    Obtained from ``DatabaseAdapter.transaction()``; everything written
    through the session is committed together or undone together.
    """

    @abstractmethod
    def truncate(self, table: str) -> None:
        """Remove every row of a table."""

    @abstractmethod
    def delete_keys(self, table: str, key_column: str, keys: Sequence[Any]) -> int:
        """Delete rows whose key is in ``keys``; returns rows deleted."""

    @abstractmethod
    def load_batch(
        self,
        table: str,
        rows: List[Row],
        key_column: Optional[str] = None
    ) -> List[Any]:
        """
        Insert a batch of rows.

        Returns:
            The target key assigned to each row, in input order
            (None where the engine cannot report one)
        """


class DatabaseAdapter(ABC):
    """
    Base class for engine adapters.

    Stages only ever talk to this interface; engine-specific behaviour
    lives entirely in the subclasses.
    """

    # Optional capabilities
    supports_attachments = False
    supports_sql = False

    def __init__(self, connection: Connection):
        """
        Initialize the adapter.

        Args:
            connection: Connection details for the database
        """
        self.connection = connection

    @property
    def engine_type(self):
        return self.connection.engine_type

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @abstractmethod
    def close(self) -> None:
        """Release connections held by the adapter."""

    @abstractmethod
    def test_connection(self) -> bool:
        """Return True if the database answers."""

    @abstractmethod
    def discover_schema(self) -> DatabaseSchema:
        """
        Introspect tables and columns.

        Raises:
            DatabaseConnectionError: if the database is unreachable
            SchemaDiscoveryError: if introspection fails
        """

    @abstractmethod
    def extract_batch(self, table: str, offset: int = 0, limit: int = 100) -> List[Row]:
        """
        Extract a batch of rows.

        Args:
            table: Table (or collection) to read
            offset: Starting offset
            limit: Maximum rows to return
        """

    @abstractmethod
    def stream_rows(
        self,
        table: str,
        batch_size: int,
        columns: Optional[Sequence[str]] = None
    ) -> Iterator[List[Row]]:
        """
        Stream a table in batches from a server-side cursor.

        The generator does not read past the current batch until the
        caller asks for the next one, so at most one batch is in memory.
        """

    @abstractmethod
    def row_count(self, table: str) -> int:
        """Number of rows (documents) in a table."""

    @abstractmethod
    def null_count(self, table: str, column: str) -> int:
        """Number of rows where ``column`` is NULL or missing."""

    def orphan_count(
        self,
        table: str,
        column: str,
        parent_table: str,
        parent_column: str,
        batch_size: int = 1000
    ) -> int:
        """
        Number of rows whose ``column`` is set but matches no parent row.

        Streams both tables; engines that can join do this in one query.
        """
        parents = set()
        for batch in self.stream_rows(parent_table, batch_size, columns=[parent_column]):
            parents.update(str(row.get(parent_column)) for row in batch)

        orphans = 0
        for batch in self.stream_rows(table, batch_size, columns=[column]):
            orphans += sum(
                1 for row in batch
                if row.get(column) is not None and str(row[column]) not in parents
            )
        return orphans

    @abstractmethod
    def transaction(self) -> ContextManager[LoadSession]:
        """Open a load session committed on success and undone on error."""

    def primary_key(self, table: str) -> Optional[str]:
        """Name of the key column of a table, if it has one."""
        return None

    @abstractmethod
    def update_value(self, table: str, key_column: str, key: Any, column: str, value: Any) -> bool:
        """Set one column of one record. Returns False if nothing was updated."""

    def load_batch(self, table: str, rows: List[Row], key_column: Optional[str] = None) -> List[Any]:
        """Insert a batch in its own transaction."""
        with self.transaction() as session:
            return session.load_batch(table, rows, key_column)

    def list_attachments(self, table: str) -> Iterator[AttachmentRef]:
        """Yield the attachments stored on a table's documents."""
        raise NotImplementedError(f"{self.engine_type.value} does not store attachments")

    def download_attachment(self, ref: AttachmentRef) -> bytes:
        """Fetch the content of one attachment."""
        raise NotImplementedError(f"{self.engine_type.value} does not store attachments")


class CompensatingLoadSession(LoadSession):
    """
    Load session for engines without multi-statement transactions.

    Inserted keys are remembered and deleted again if the session is
    rolled back. Truncation cannot be undone.
    """

    def __init__(self):
        self._created: Dict[str, List[Any]] = {}

    def remember(self, table: str, keys: Sequence[Any]) -> None:
        self._created.setdefault(table, []).extend(k for k in keys if k is not None)

    @abstractmethod
    def _delete_created(self, table: str, keys: List[Any]) -> None:
        """Remove previously inserted records."""

    def rollback(self) -> Dict[str, int]:
        """Delete everything this session inserted."""
        deleted = {}
        for table, keys in self._created.items():
            try:
                self._delete_created(table, keys)
                deleted[table] = len(keys)
            except Exception as e:
                logger.error(f"Failed to roll back {len(keys)} {table} records: {e}")
                raise
            logger.info(f"Rolled back {len(keys)} {table} records")
        self._created = {}
        return deleted


@contextmanager
def compensating_transaction(session: CompensatingLoadSession):
    """Yield a session and undo its inserts if the block raises."""
    try:
        yield session
    except BaseException:
        session.rollback()
        raise
