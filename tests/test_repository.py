"""Mapping repositories and report sinks."""

import json

import pytest

from migration_engine.errors import MappingError
from migration_engine.models.record import MigrationReport, RecordIdMapping, TableReportDetail
from migration_engine.models.schema import ConnectionRole, EngineType
from migration_engine.services.repository import (
    InMemoryMappingRepository,
    InMemoryReportSink,
    JsonFileReportSink,
    JsonMappingRepository,
    MappingProject,
)

from .conftest import PROJECT_ID, shop_project

PROJECT_JSON = {
    "project_id": "crm",
    "source": {"type": "couch", "host": "couch.internal", "database": "contacts"},
    "target": {"engine_type": "postgresql", "database": "crm", "credentials_ref": "CRM_PASSWORD"},
    "tables": [
        {
            "source_table": "contacts",
            "target_table": "contact",
            "columns": [
                {"source_column": "_id", "target_column": "contact_id"},
                {
                    "source_column": "email",
                    "transformations": [{"type": "case_change", "parameters": {"case": "lower"}}],
                },
            ],
        },
    ],
}


def test_project_from_dict():
    project = MappingProject.from_dict(PROJECT_JSON)

    assert project.source.engine_type == EngineType.COUCHDB
    assert project.source.role == ConnectionRole.SOURCE
    assert project.target.engine_type == EngineType.POSTGRES
    assert project.target.role == ConnectionRole.TARGET
    table, columns = project.tables[0]
    assert table.id == "contacts"
    assert [c.target_column for c in columns] == ["contact_id", "email"]
    assert columns[1].transformation.type.value == "lowercase"


def test_project_json_file_round_trip(tmp_path):
    path = tmp_path / "shop.json"
    shop_project().to_json_file(str(path))

    loaded = MappingProject.from_json_file(str(path))

    assert loaded.project_id == PROJECT_ID
    assert [t.target_table for t, _ in loaded.tables] == ["countries", "products", "orders"]
    assert loaded.tables[2][0].depends_on == ["countries", "products"]


def test_in_memory_repository_lookups():
    repository = InMemoryMappingRepository()
    repository.add_project(shop_project())

    assert repository.list_projects() == [PROJECT_ID]
    assert repository.get_connection(PROJECT_ID, ConnectionRole.TARGET).role == ConnectionRole.TARGET
    assert [t.id for t in repository.get_table_mappings(PROJECT_ID)] == ["countries", "products", "orders"]
    assert [c.source_column for c in repository.get_column_mappings("countries")] == ["id", "code", "name"]

    with pytest.raises(MappingError):
        repository.get_table_mappings("missing")
    with pytest.raises(MappingError):
        repository.get_column_mappings("missing")


def test_table_ids_are_unique_across_projects():
    repository = InMemoryMappingRepository()
    repository.add_project(shop_project())

    other = shop_project(include=("countries",))
    other.project_id = "other"
    with pytest.raises(MappingError, match="already used"):
        repository.add_project(other)


def test_replacing_a_project_drops_old_tables():
    repository = InMemoryMappingRepository()
    repository.add_project(shop_project())
    repository.add_project(shop_project(include=("countries",)))

    assert [t.id for t in repository.get_table_mappings(PROJECT_ID)] == ["countries"]
    with pytest.raises(MappingError):
        repository.get_column_mappings("orders")


def test_json_repository_loads_directory(tmp_path):
    (tmp_path / "crm.json").write_text(json.dumps(PROJECT_JSON))
    (tmp_path / "broken.json").write_text("{not json")
    shop_project().to_json_file(str(tmp_path / "shop.json"))

    repository = JsonMappingRepository(str(tmp_path))

    assert repository.list_projects() == ["crm", PROJECT_ID]


def test_json_repository_missing_directory(tmp_path):
    repository = JsonMappingRepository()
    assert repository.load_directory(str(tmp_path / "missing")) == 0


def report():
    return MigrationReport(
        execution_id="exec-1",
        project_id=PROJECT_ID,
        status="completed",
        summary={"totalRecords": 10},
        tables=[TableReportDetail("orders", "orders", "fact", staged_rows=10, loaded_rows=10)],
        id_mappings=[RecordIdMapping("exec-1", "orders", "1", "101")],
    )


def test_in_memory_sink_returns_latest_report():
    sink = InMemoryReportSink()
    first, second = report(), report()
    sink.persist_report(first)
    sink.persist_report(second)

    assert sink.get("exec-1") is second
    assert sink.get("exec-2") is None


def test_json_file_sink_writes_report_and_audit(tmp_path):
    JsonFileReportSink(str(tmp_path / "logs")).persist_report(report())

    [report_file] = (tmp_path / "logs").glob("migration_report_exec-1_*.json")
    [audit_file] = (tmp_path / "logs").glob("migration_audit_exec-1_*.json")

    data = json.loads(report_file.read_text())
    assert data["summary"] == {"totalRecords": 10}
    assert data["tables"][0]["loaded_rows"] == 10
    assert "id_mappings" not in data

    audit = json.loads(audit_file.read_text())
    assert audit["id_mappings"][0]["target_id"] == "101"
    assert audit["attachments"] == []
