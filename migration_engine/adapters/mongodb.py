"""MongoDB adapter built on pymongo."""

import json
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

from bson import Decimal128, ObjectId
from pymongo import MongoClient
from pymongo.errors import ConnectionFailure, PyMongoError

from ..errors import DatabaseConnectionError, SchemaDiscoveryError
from ..models.schema import ColumnInfo, Connection, DatabaseSchema, TableInfo
from .base import (
    CompensatingLoadSession,
    DatabaseAdapter,
    Row,
    compensating_transaction,
)

logger = logging.getLogger(__name__)

PRIMARY_KEY = "_id"


def infer_type(value: Any) -> str:
    """Document type name of a sample value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "double"
    if isinstance(value, Decimal128):
        return "decimal"
    if isinstance(value, datetime):
        return "date"
    if isinstance(value, ObjectId):
        return "objectid"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return "string"


def normalize_document(document: Dict[str, Any], columns: Optional[Sequence[str]] = None) -> Row:
    """Flatten a document into a row of scalar values."""
    row = {}
    names = columns if columns else document.keys()
    for name in names:
        value = document.get(name)
        if isinstance(value, ObjectId):
            value = str(value)
        elif isinstance(value, Decimal128):
            value = value.to_decimal()
        elif isinstance(value, (dict, list)):
            value = json.dumps(value, default=str)
        row[name] = value
    return row


def _key_filter(key_column: str, key: Any) -> Dict[str, Any]:
    if key_column == PRIMARY_KEY and isinstance(key, str) and ObjectId.is_valid(key):
        return {key_column: {"$in": [key, ObjectId(key)]}}
    return {key_column: key}


class MongoLoadSession(CompensatingLoadSession):
    """Inserts are undone by deleting the inserted _ids."""

    def __init__(self, database):
        super().__init__()
        self.database = database

    def truncate(self, table: str) -> None:
        result = self.database[table].delete_many({})
        logger.info(f"Cleared {table} ({result.deleted_count} documents)")

    def delete_keys(self, table: str, key_column: str, keys: Sequence[Any]) -> int:
        keys = list(keys)
        if key_column == PRIMARY_KEY:
            keys = keys + [ObjectId(k) for k in keys if isinstance(k, str) and ObjectId.is_valid(k)]
        return self.database[table].delete_many({key_column: {"$in": keys}}).deleted_count

    def load_batch(
        self,
        table: str,
        rows: List[Row],
        key_column: Optional[str] = None
    ) -> List[Any]:
        if not rows:
            return []
        documents = [dict(row) for row in rows]
        result = self.database[table].insert_many(documents, ordered=True)
        self.remember(table, result.inserted_ids)

        key_column = key_column or PRIMARY_KEY
        if key_column == PRIMARY_KEY:
            return [str(inserted_id) for inserted_id in result.inserted_ids]
        return [row.get(key_column) for row in rows]

    def _delete_created(self, table: str, keys: List[Any]) -> None:
        self.database[table].delete_many({PRIMARY_KEY: {"$in": keys}})


class MongoAdapter(DatabaseAdapter):
    """
    Adapter for MongoDB.

    Collections are tables. Columns are inferred from one sample
    document per collection, with ``_id`` as the primary key.
    """

    def __init__(self, connection: Connection, client: Optional[MongoClient] = None):
        """
        Initialize the adapter.

        Args:
            connection: Connection details for the database
            client: Existing client to use (left open on close)
        """
        super().__init__(connection)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            self._client = MongoClient(
                host=self.connection.host,
                port=self.connection.port or 27017,
                username=self.connection.username,
                password=self.connection.password,
                serverSelectionTimeoutMS=self.connection.options.get("server_selection_timeout_ms", 10000),
            )
        return self._client

    @property
    def database(self):
        return self.client[self.connection.database]

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None

    def test_connection(self) -> bool:
        try:
            self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.error(f"Connection test failed for {self.connection.database}: {e}")
            return False

    def discover_schema(self) -> DatabaseSchema:
        logger.info(f"Discovering collections of mongodb:{self.connection.database}")
        try:
            names = sorted(
                name for name in self.database.list_collection_names()
                if not name.startswith("system.")
            )
            tables = [self._describe_collection(name) for name in names]
        except ConnectionFailure as e:
            raise DatabaseConnectionError(
                f"Cannot connect to {self.connection.database}: {e}",
                engine=self.connection.engine_type.value,
            ) from e
        except PyMongoError as e:
            raise SchemaDiscoveryError(f"Schema discovery failed for {self.connection.database}: {e}") from e

        logger.info(f"Discovered {len(tables)} collections")
        return DatabaseSchema(
            engine_type=self.connection.engine_type,
            database=self.connection.database,
            tables=tables,
        )

    def _describe_collection(self, name: str) -> TableInfo:
        sample = self.database[name].find_one() or {}
        columns = [ColumnInfo(
            name=PRIMARY_KEY,
            data_type=infer_type(sample.get(PRIMARY_KEY, ObjectId())),
            nullable=False,
            is_primary_key=True,
        )]
        for field_name, value in sample.items():
            if field_name == PRIMARY_KEY:
                continue
            columns.append(ColumnInfo(name=field_name, data_type=infer_type(value), nullable=True))
        return TableInfo(name=name, columns=columns)

    def extract_batch(self, table: str, offset: int = 0, limit: int = 100) -> List[Row]:
        cursor = self.database[table].find({}).sort(PRIMARY_KEY, 1).skip(offset).limit(limit)
        return [normalize_document(document) for document in cursor]

    def stream_rows(
        self,
        table: str,
        batch_size: int,
        columns: Optional[Sequence[str]] = None
    ) -> Iterator[List[Row]]:
        projection = {name: 1 for name in columns} if columns else None
        cursor = self.database[table].find({}, projection, batch_size=batch_size)
        try:
            batch = []
            for document in cursor:
                batch.append(normalize_document(document, columns))
                if len(batch) >= batch_size:
                    yield batch
                    batch = []
            if batch:
                yield batch
        finally:
            cursor.close()

    def primary_key(self, table: str) -> Optional[str]:
        return PRIMARY_KEY

    def row_count(self, table: str) -> int:
        return self.database[table].count_documents({})

    def null_count(self, table: str, column: str) -> int:
        # {field: None} matches both null and missing fields
        return self.database[table].count_documents({column: None})

    @contextmanager
    def transaction(self) -> Iterator[MongoLoadSession]:
        with compensating_transaction(MongoLoadSession(self.database)) as session:
            yield session

    def update_value(self, table: str, key_column: str, key: Any, column: str, value: Any) -> bool:
        result = self.database[table].update_one(_key_filter(key_column, key), {"$set": {column: value}})
        return result.matched_count > 0
