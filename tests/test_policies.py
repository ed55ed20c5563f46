"""Error-handling policies when one table cannot be loaded."""

import pytest
import sqlalchemy as sa

from migration_engine.controller import execute_etl_pipeline
from migration_engine.models.execution import (
    ErrorHandling,
    ETLPipelineConfig,
    ExecutionStatus,
    StageId,
    StageStatus,
)
from migration_engine.models.record import ValidationKind, ValidationStatus
from migration_engine.services.repository import InMemoryMappingRepository

from .conftest import PROJECT_ID, create_target, seed_source, shop_project


@pytest.fixture
def broken_shop(source_engine, target_engine):
    """Three independent dimension tables; the products target is missing."""
    seed_source(source_engine)
    create_target(target_engine, skip=("products",))
    project = shop_project()
    for table, _ in project.tables:
        table.depends_on = []
    repository = InMemoryMappingRepository()
    repository.add_project(project)
    return repository


def run(repository, adapter_factory, report_sink, policy):
    config = ETLPipelineConfig(
        project_id=PROJECT_ID,
        batch_size=200,
        error_handling=policy,
        retry_delay_seconds=0,
    )
    return execute_etl_pipeline(config, repository, report_sink=report_sink, adapter_factory=adapter_factory)


def test_fail_fast_stops_at_failing_table(broken_shop, adapter_factory, report_sink):
    execution = run(broken_shop, adapter_factory, report_sink, ErrorHandling.FAIL_FAST)

    assert execution.status == ExecutionStatus.FAILED
    assert [s.stage_id for s in execution.stages] == [
        StageId.EXTRACT,
        StageId.TRANSFORM,
        StageId.LOAD_DIMENSIONS,
    ]
    dimensions = execution.get_stage(StageId.LOAD_DIMENSIONS)
    assert dimensions.status == StageStatus.FAILED
    assert set(dimensions.metadata["tables"]) == {"countries", "products"}
    assert execution.errors[0]["stage"] == StageId.LOAD_DIMENSIONS.value
    assert report_sink.reports == []


def test_continue_on_error_attempts_every_table(broken_shop, adapter_factory, report_sink):
    execution = run(broken_shop, adapter_factory, report_sink, ErrorHandling.CONTINUE_ON_ERROR)

    assert execution.status == ExecutionStatus.COMPLETED
    assert len(execution.stages) == 6

    dimensions = execution.get_stage(StageId.LOAD_DIMENSIONS)
    assert dimensions.status == StageStatus.FAILED
    assert set(dimensions.metadata["tables"]) == {"countries", "products", "orders"}
    assert dimensions.records_processed == 1005
    assert dimensions.records_failed == 20
    assert dimensions.errors[0]["table"] == "products"
    assert execution.failed_records == 20

    report = report_sink.get(execution.id)
    assert report.status == "completed-with-errors"
    assert report.summary["failedRecords"] == 20
    details = {d.target_table: d for d in report.tables}
    assert details["products"].status == "failed"
    assert details["products"].id_mappings == 0
    assert details["orders"].id_mappings == 1000


def test_failed_table_is_not_compared(broken_shop, adapter_factory, report_sink):
    execution = run(broken_shop, adapter_factory, report_sink, ErrorHandling.CONTINUE_ON_ERROR)
    report = report_sink.get(execution.id)

    products = [v for v in report.validations if v.table == "products"]
    assert len(products) == 1
    assert products[0].kind == ValidationKind.ROW_COUNT
    assert products[0].status == ValidationStatus.WARNING
    assert products[0].message.startswith("Not compared")


def test_skip_and_log_completes_stage_with_warning(broken_shop, adapter_factory, report_sink):
    execution = run(broken_shop, adapter_factory, report_sink, ErrorHandling.SKIP_AND_LOG)

    assert execution.status == ExecutionStatus.COMPLETED
    dimensions = execution.get_stage(StageId.LOAD_DIMENSIONS)
    assert dimensions.status == StageStatus.COMPLETED
    assert any(w.startswith("Skipped products") for w in dimensions.warnings)
    assert dimensions.records_failed == 20
    assert report_sink.get(execution.id).status == "completed"


def test_table_is_not_loaded_when_a_parent_failed(source_engine, target_engine, adapter_factory, report_sink):
    seed_source(source_engine)
    create_target(target_engine, skip=("products",))
    repository = InMemoryMappingRepository()
    repository.add_project(shop_project())

    execution = run(repository, adapter_factory, report_sink, ErrorHandling.CONTINUE_ON_ERROR)

    facts = execution.get_stage(StageId.LOAD_FACTS)
    assert facts.status == StageStatus.FAILED
    orders = facts.metadata["tables"]["orders"]
    assert "orders.product_id references products, which was not loaded" in orders["error"]
    assert orders["category"] == "InvalidReference"
    assert orders["records_processed"] == 0
    with target_engine.connect() as conn:
        assert conn.execute(sa.text("SELECT COUNT(*) FROM orders")).scalar_one() == 0

    report = report_sink.get(execution.id)
    assert not [v for v in report.validations if v.kind == ValidationKind.FOREIGN_KEY]
