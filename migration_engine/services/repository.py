"""Mapping repositories and report sinks."""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import MappingError
from ..models.execution import utc_now
from ..models.record import MigrationReport
from ..models.schema import ColumnMapping, Connection, ConnectionRole, TableMapping

logger = logging.getLogger(__name__)


@dataclass
class MappingProject:
    """Connections plus table and column mappings of one migration project."""
    project_id: str
    source: Connection
    target: Connection
    tables: List[Tuple[TableMapping, List[ColumnMapping]]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "tables": [
                dict(table.to_dict(), columns=[c.to_dict() for c in columns])
                for table, columns in self.tables
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingProject":
        source = dict(data["source"], role=ConnectionRole.SOURCE.value)
        target = dict(data["target"], role=ConnectionRole.TARGET.value)
        return cls(
            project_id=data["project_id"],
            source=Connection.from_dict(source),
            target=Connection.from_dict(target),
            tables=[
                (
                    TableMapping.from_dict(table),
                    [ColumnMapping.from_dict(column) for column in table.get("columns", [])],
                )
                for table in data.get("tables", [])
            ],
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MappingProject":
        with open(file_path) as f:
            return cls.from_dict(json.load(f))

    def to_json_file(self, file_path: str) -> None:
        with open(file_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


class MappingRepository(ABC):
    """Read-only access to connections and mappings."""

    @abstractmethod
    def get_connection(self, project_id: str, role: ConnectionRole) -> Connection:
        """Source or target connection of a project."""

    @abstractmethod
    def get_table_mappings(self, project_id: str) -> List[TableMapping]:
        """Table mappings of a project."""

    @abstractmethod
    def get_column_mappings(self, table_mapping_id: str) -> List[ColumnMapping]:
        """Column mappings of one table mapping."""


class InMemoryMappingRepository(MappingRepository):
    """Repository holding projects in memory."""

    def __init__(self):
        self.projects: Dict[str, MappingProject] = {}
        self._columns: Dict[str, List[ColumnMapping]] = {}
        self._owners: Dict[str, str] = {}

    def add_project(self, project: MappingProject) -> None:
        """
        Register a project.

        Raises:
            MappingError: if a table mapping id is already used by another project
        """
        for table, _ in project.tables:
            owner = self._owners.get(table.id)
            if owner is not None and owner != project.project_id:
                raise MappingError(
                    f"Table mapping id {table.id} is already used by project {owner}"
                )

        previous = self.projects.get(project.project_id)
        if previous is not None:
            for table, _ in previous.tables:
                self._columns.pop(table.id, None)
                self._owners.pop(table.id, None)

        self.projects[project.project_id] = project
        for table, columns in project.tables:
            self._columns[table.id] = list(columns)
            self._owners[table.id] = project.project_id

    def _project(self, project_id: str) -> MappingProject:
        project = self.projects.get(project_id)
        if project is None:
            raise MappingError(f"Unknown project: {project_id}")
        return project

    def get_connection(self, project_id: str, role: ConnectionRole) -> Connection:
        project = self._project(project_id)
        return project.source if ConnectionRole(role) == ConnectionRole.SOURCE else project.target

    def get_table_mappings(self, project_id: str) -> List[TableMapping]:
        return [table for table, _ in self._project(project_id).tables]

    def get_column_mappings(self, table_mapping_id: str) -> List[ColumnMapping]:
        if table_mapping_id not in self._columns:
            raise MappingError(f"Unknown table mapping: {table_mapping_id}")
        return list(self._columns[table_mapping_id])

    def list_projects(self) -> List[str]:
        return sorted(self.projects)


class JsonMappingRepository(InMemoryMappingRepository):
    """
    Repository backed by a directory of project JSON files.

    Each file holds one project: ``project_id``, ``source`` and ``target``
    connections, and ``tables`` with nested ``columns``.
    """

    def __init__(self, directory: Optional[str] = None):
        """
        Initialize the repository.

        Args:
            directory: Directory containing project JSON files
        """
        super().__init__()
        if directory:
            self.load_directory(directory)

    def load_file(self, file_path: str) -> MappingProject:
        project = MappingProject.from_json_file(file_path)
        self.add_project(project)
        logger.info(f"Loaded project {project.project_id} from {file_path}")
        return project

    def load_directory(self, directory: str) -> int:
        """
        Load all project files from a directory.

        Args:
            directory: Path to directory containing project JSON files

        Returns:
            Number of projects loaded
        """
        loaded = 0
        path = Path(directory)

        if not path.exists():
            logger.warning(f"Project directory does not exist: {directory}")
            return 0

        for file_path in sorted(path.glob("**/*.json")):
            try:
                self.load_file(str(file_path))
                loaded += 1
            except Exception as e:
                logger.error(f"Failed to load project from {file_path}: {e}")

        return loaded


class ReportSink(ABC):
    """Destination for migration reports."""

    @abstractmethod
    def persist_report(self, report: MigrationReport) -> None:
        """Store a finished report together with its audit records."""


class InMemoryReportSink(ReportSink):
    """Keeps reports in a list."""

    def __init__(self):
        self.reports: List[MigrationReport] = []
        self._lock = threading.Lock()

    def persist_report(self, report: MigrationReport) -> None:
        with self._lock:
            self.reports.append(report)

    def get(self, execution_id: str) -> Optional[MigrationReport]:
        for report in reversed(self.reports):
            if report.execution_id == execution_id:
                return report
        return None


class JsonFileReportSink(ReportSink):
    """Writes the report and an audit file (ID mappings, attachments) as JSON."""

    def __init__(self, output_dir: str = "./logs"):
        self.output_dir = Path(output_dir)

    def persist_report(self, report: MigrationReport) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().strftime("%Y%m%d_%H%M%S")

        report_path = self.output_dir / f"migration_report_{report.execution_id}_{stamp}.json"
        with open(report_path, "w") as f:
            json.dump(report.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {report_path}")

        audit_path = self.output_dir / f"migration_audit_{report.execution_id}_{stamp}.json"
        audit = report.to_dict(include_audit=True)
        with open(audit_path, "w") as f:
            json.dump(
                {
                    "execution_id": report.execution_id,
                    "id_mappings": audit["id_mappings"],
                    "attachments": audit["attachments"],
                },
                f,
                indent=2,
                default=str,
            )
        logger.info(f"Saved audit records to {audit_path}")
