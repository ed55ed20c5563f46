"""Per-execution tracking of source-to-target keys and attachment transfers."""

import logging
import threading
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.record import (
    AttachmentMigrationRecord,
    AttachmentStatus,
    RecordIdMapping,
)

logger = logging.getLogger(__name__)


class IdMappingTracker:
    """
    Records which target key each source record received.

    Mappings are unique per (execution, table, source id); a second
    mapping for the same key is ignored and counted as a duplicate.
    """

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self._mappings: Dict[Tuple[str, str], RecordIdMapping] = {}
        # Target keys with the type the target returned them in
        self._target_keys: Dict[Tuple[str, str], Any] = {}
        self._duplicates: Counter = Counter()
        self._lock = threading.Lock()

    def record(
        self,
        table: str,
        source_id: Any,
        target_id: Any,
        source_id_column: Optional[str] = None,
        target_id_column: Optional[str] = None
    ) -> bool:
        """Record one mapping. Returns False if the key was already mapped."""
        mapping = RecordIdMapping(
            execution_id=self.execution_id,
            table=table,
            source_id=str(source_id),
            target_id=str(target_id),
            source_id_column=source_id_column,
            target_id_column=target_id_column,
        )
        key = (table, mapping.source_id)
        with self._lock:
            if key in self._mappings:
                self._duplicates[table] += 1
                return False
            self._mappings[key] = mapping
            self._target_keys[key] = target_id
            return True

    def record_many(
        self,
        table: str,
        pairs: Iterable[Tuple[Any, Any]],
        source_id_column: Optional[str] = None,
        target_id_column: Optional[str] = None
    ) -> int:
        """Record (source_id, target_id) pairs; returns how many were new."""
        added = 0
        for source_id, target_id in pairs:
            if source_id is None or target_id is None:
                continue
            if self.record(table, source_id, target_id, source_id_column, target_id_column):
                added += 1
        return added

    def resolve(self, table: str, source_id: Any) -> Optional[str]:
        """Target key for a source key of a table."""
        mapping = self._mappings.get((table, str(source_id)))
        return mapping.target_id if mapping else None

    def target_key(self, table: str, source_id: Any) -> Any:
        """Target key for a source key, as the target returned it."""
        return self._target_keys.get((table, str(source_id)))

    def count(self, table: Optional[str] = None) -> int:
        if table is None:
            return len(self._mappings)
        return sum(1 for key in self._mappings if key[0] == table)

    def duplicates(self, table: str) -> int:
        """Source keys of a table that arrived more than once."""
        return self._duplicates[table]

    def all(self) -> List[RecordIdMapping]:
        with self._lock:
            return list(self._mappings.values())


class AttachmentTracker:
    """Collects AttachmentMigrationRecords for one execution."""

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        self._records: List[AttachmentMigrationRecord] = []
        self._lock = threading.Lock()

    def add(self, record: AttachmentMigrationRecord) -> None:
        with self._lock:
            self._records.append(record)

    def all(self) -> List[AttachmentMigrationRecord]:
        with self._lock:
            return list(self._records)

    @property
    def total(self) -> int:
        return len(self._records)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self._records if r.status == AttachmentStatus.COMPLETED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self._records if r.status == AttachmentStatus.FAILED)

    @property
    def success_rate(self) -> Optional[float]:
        """Percentage of attachments migrated, or None if there were none."""
        if not self._records:
            return None
        return self.succeeded / self.total * 100
