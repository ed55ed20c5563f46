"""CouchDB adapter over the HTTP API."""

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence
from urllib.parse import quote

import requests

from ..errors import DatabaseConnectionError, LoadError, SchemaDiscoveryError
from ..models.schema import ColumnInfo, Connection, DatabaseSchema, TableInfo
from .base import (
    AttachmentRef,
    CompensatingLoadSession,
    DatabaseAdapter,
    Row,
    compensating_transaction,
)

logger = logging.getLogger(__name__)

PRIMARY_KEY = "_id"
DESIGN_PREFIX = "_design/"
_DISCOVERY_SAMPLE = 10


def infer_type(value: Any) -> str:
    """JSON type name of a sample value."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "double"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list):
        return "array"
    return "string"


def normalize_document(document: Dict[str, Any], columns: Optional[Sequence[str]] = None) -> Row:
    """Drop CouchDB bookkeeping fields and serialize nested values."""
    row = {}
    names = columns if columns else [k for k in document if k not in ("_rev", "_attachments")]
    for name in names:
        value = document.get(name)
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        row[name] = value
    return row


class CouchLoadSession(CompensatingLoadSession):
    """Writes through _bulk_docs; inserted documents are deleted on rollback."""

    def __init__(self, adapter: "CouchDbAdapter"):
        super().__init__()
        self.adapter = adapter

    def truncate(self, table: str) -> None:
        deleted = 0
        for page in self.adapter.iter_documents(table, 500):
            self.adapter.bulk_delete(table, page)
            deleted += len(page)
        logger.info(f"Cleared {table} ({deleted} documents)")

    def delete_keys(self, table: str, key_column: str, keys: Sequence[Any]) -> int:
        wanted = {str(key) for key in keys}
        doomed = []
        for page in self.adapter.iter_documents(table, 500):
            doomed.extend(doc for doc in page if str(doc.get(key_column)) in wanted)
        if doomed:
            self.adapter.bulk_delete(table, doomed)
        return len(doomed)

    def load_batch(
        self,
        table: str,
        rows: List[Row],
        key_column: Optional[str] = None
    ) -> List[Any]:
        if not rows:
            return []
        results = self.adapter.bulk_save(table, rows)
        self.remember(table, [(r["id"], r["rev"]) for r in results])

        key_column = key_column or PRIMARY_KEY
        if key_column == PRIMARY_KEY:
            return [r["id"] for r in results]
        return [row.get(key_column) for row in rows]

    def _delete_created(self, table: str, keys: List[Any]) -> None:
        self.adapter.bulk_delete(table, [{"_id": doc_id, "_rev": rev} for doc_id, rev in keys])


class CouchDbAdapter(DatabaseAdapter):
    """
    Adapter for CouchDB.

    Each database on the server is a table (only ``connection.database``
    when one is named). Design documents are never treated as data.
    """

    supports_attachments = True

    def __init__(self, connection: Connection, session: Optional[requests.Session] = None):
        """
        Initialize the adapter.

        Args:
            connection: Connection details for the server
            session: Custom requests session
        """
        super().__init__(connection)
        scheme = connection.options.get("scheme", "http")
        self.base_url = f"{scheme}://{connection.host}:{connection.port or 5984}"
        self.timeout = connection.options.get("timeout", 30)
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with basic authentication."""
        session = requests.Session()
        if self.connection.username:
            session.auth = (self.connection.username, self.connection.password or "")
        session.headers["Accept"] = "application/json"
        return session

    def _url(self, *parts: str) -> str:
        return "/".join([self.base_url] + [quote(str(part), safe="") for part in parts])

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise DatabaseConnectionError(
                f"Cannot reach CouchDB at {self.base_url}: {e}",
                engine=self.connection.engine_type.value,
            ) from e
        response.raise_for_status()
        return response

    def close(self) -> None:
        self._session.close()

    def test_connection(self) -> bool:
        try:
            self._request("GET", f"{self.base_url}/")
            return True
        except (DatabaseConnectionError, requests.exceptions.RequestException) as e:
            logger.error(f"Connection test failed for {self.base_url}: {e}")
            return False

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def databases(self) -> List[str]:
        if self.connection.database:
            return [self.connection.database]
        names = self._request("GET", f"{self.base_url}/_all_dbs").json()
        return sorted(name for name in names if not name.startswith("_"))

    def discover_schema(self) -> DatabaseSchema:
        logger.info(f"Discovering databases on {self.base_url}")
        try:
            tables = [self._describe_database(name) for name in self.databases()]
        except requests.exceptions.RequestException as e:
            raise SchemaDiscoveryError(f"Schema discovery failed on {self.base_url}: {e}") from e

        logger.info(f"Discovered {len(tables)} databases")
        return DatabaseSchema(
            engine_type=self.connection.engine_type,
            database=self.connection.database,
            tables=tables,
        )

    def _describe_database(self, name: str) -> TableInfo:
        response = self._request(
            "GET",
            self._url(name, "_all_docs"),
            params={"include_docs": "true", "limit": _DISCOVERY_SAMPLE},
        )
        sample = next(
            (row["doc"] for row in response.json().get("rows", []) if not row["id"].startswith(DESIGN_PREFIX)),
            {},
        )
        columns = [ColumnInfo(name=PRIMARY_KEY, data_type="string", nullable=False, is_primary_key=True)]
        for field_name, value in sample.items():
            if field_name in (PRIMARY_KEY, "_rev", "_attachments"):
                continue
            columns.append(ColumnInfo(name=field_name, data_type=infer_type(value), nullable=True))
        return TableInfo(name=name, columns=columns)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def iter_documents(self, table: str, batch_size: int) -> Iterator[List[Dict[str, Any]]]:
        """Page through a database's documents, skipping design documents."""
        params = {"include_docs": "true", "limit": batch_size}
        while True:
            rows = self._request("GET", self._url(table, "_all_docs"), params=params).json().get("rows", [])
            if not rows:
                return
            documents = [row["doc"] for row in rows if not row["id"].startswith(DESIGN_PREFIX)]
            if documents:
                yield documents
            if len(rows) < batch_size:
                return
            params = {
                "include_docs": "true",
                "limit": batch_size,
                "startkey": json.dumps(rows[-1]["id"]),
                "skip": 1,
            }

    def extract_batch(self, table: str, offset: int = 0, limit: int = 100) -> List[Row]:
        documents = []
        for page in self.iter_documents(table, max(limit, 1)):
            documents.extend(page)
            if len(documents) >= offset + limit:
                break
        return [normalize_document(doc) for doc in documents[offset:offset + limit]]

    def stream_rows(
        self,
        table: str,
        batch_size: int,
        columns: Optional[Sequence[str]] = None
    ) -> Iterator[List[Row]]:
        for page in self.iter_documents(table, batch_size):
            yield [normalize_document(doc, columns) for doc in page]

    def primary_key(self, table: str) -> Optional[str]:
        return PRIMARY_KEY

    def row_count(self, table: str) -> int:
        info = self._request("GET", self._url(table)).json()
        design = self._request(
            "GET",
            self._url(table, "_all_docs"),
            params={"startkey": json.dumps("_design/"), "endkey": json.dumps("_design0")},
        ).json().get("rows", [])
        return info.get("doc_count", 0) - len(design)

    def null_count(self, table: str, column: str) -> int:
        return sum(
            1
            for page in self.iter_documents(table, 500)
            for doc in page
            if doc.get(column) is None
        )

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def bulk_save(self, table: str, documents: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Save documents via _bulk_docs; raises LoadError if any is rejected."""
        results = self._request("POST", self._url(table, "_bulk_docs"), json={"docs": documents}).json()
        rejected = [r for r in results if r.get("error")]
        if rejected:
            first = rejected[0]
            raise LoadError(
                f"{len(rejected)} documents rejected by {table}: {first.get('error')} ({first.get('reason')})",
                table=table,
            )
        return results

    def bulk_delete(self, table: str, documents: List[Dict[str, Any]]) -> None:
        tombstones = [{"_id": doc["_id"], "_rev": doc["_rev"], "_deleted": True} for doc in documents]
        if tombstones:
            self.bulk_save(table, tombstones)

    @contextmanager
    def transaction(self) -> Iterator[CouchLoadSession]:
        with compensating_transaction(CouchLoadSession(self)) as session:
            yield session

    def update_value(self, table: str, key_column: str, key: Any, column: str, value: Any) -> bool:
        if key_column == PRIMARY_KEY:
            response = self._session.get(self._url(table, key), timeout=self.timeout)
            if response.status_code == 404:
                return False
            response.raise_for_status()
            documents = [response.json()]
        else:
            documents = [
                doc
                for page in self.iter_documents(table, 500)
                for doc in page
                if str(doc.get(key_column)) == str(key)
            ]
        for document in documents:
            document[column] = value
        if documents:
            self.bulk_save(table, documents)
        return bool(documents)

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def list_attachments(self, table: str) -> Iterator[AttachmentRef]:
        for page in self.iter_documents(table, 100):
            for document in page:
                for name, stub in (document.get("_attachments") or {}).items():
                    yield AttachmentRef(
                        table=table,
                        document_id=document["_id"],
                        name=name,
                        content_type=stub.get("content_type"),
                        size=stub.get("length"),
                        source_url=self._url(table, document["_id"], name),
                    )

    def download_attachment(self, ref: AttachmentRef) -> bytes:
        url = ref.source_url or self._url(ref.table, ref.document_id, ref.name)
        return self._request("GET", url).content
