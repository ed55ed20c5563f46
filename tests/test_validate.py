"""Post-load validation checks."""

import pytest

from migration_engine.models.execution import LoadStrategy, StageStatus
from migration_engine.models.record import (
    AttachmentMigrationRecord,
    AttachmentStatus,
    ValidationKind,
    ValidationStatus,
)
from migration_engine.models.schema import ColumnMapping, TableKind
from migration_engine.stages.base import TableOutcome
from migration_engine.stages.plan import ForeignKey
from migration_engine.stages.staging import StagedTable
from migration_engine.stages.validate import LoadValidator, validate_load

from .conftest import planned, stage_context


class FakeTarget:
    def __init__(self, rows=100, nulls=None, primary_key="id", orphans=None):
        self.rows = rows
        self.nulls = nulls or {}
        self.orphans = orphans or {}
        self.key = primary_key

    def row_count(self, table):
        if isinstance(self.rows, Exception):
            raise self.rows
        return self.rows

    def null_count(self, table, column):
        return self.nulls.get(column, 0)

    def primary_key(self, table):
        return self.key

    def orphan_count(self, table, column, parent_table, parent_column):
        return self.orphans.get(column, 0)


class FakeStaging:
    def count(self, staged):
        return staged.rows_staged


def validator(target, strategy=LoadStrategy.TRUNCATE_LOAD, columns=None, outcome=None):
    table = planned("orders", columns=columns)
    ctx = stage_context([table], load_strategy=strategy)
    ctx.staged[table.id] = StagedTable("orders", "stg_orders", "staging", [("id", "INTEGER")], rows_staged=100)
    ctx.loaded[table.id] = outcome or TableOutcome("orders", records_processed=100)
    return LoadValidator(ctx, target, FakeStaging()), ctx


def by_kind(results, kind):
    return [r for r in results if r.kind == kind]


def test_matching_row_count_passes():
    check, _ = validator(FakeTarget(rows=100))
    [row_count] = by_kind(check.run(), ValidationKind.ROW_COUNT)
    assert row_count.status == ValidationStatus.PASSED
    assert (row_count.expected, row_count.actual) == (100, 100)


def test_row_count_mismatch_fails():
    check, _ = validator(FakeTarget(rows=90))
    [row_count] = by_kind(check.run(), ValidationKind.ROW_COUNT)
    assert row_count.status == ValidationStatus.FAILED
    assert row_count.message == "Expected target row count equal staging count 100, found 90"


@pytest.mark.parametrize("strategy", [LoadStrategy.APPEND, LoadStrategy.MERGE])
def test_incremental_strategies_need_at_least_staged_rows(strategy):
    check, _ = validator(FakeTarget(rows=150), strategy=strategy)
    assert by_kind(check.run(), ValidationKind.ROW_COUNT)[0].passed

    check, _ = validator(FakeTarget(rows=90), strategy=strategy)
    [row_count] = by_kind(check.run(), ValidationKind.ROW_COUNT)
    assert row_count.status == ValidationStatus.FAILED
    assert "at least" in row_count.message


def test_nulls_in_required_columns_fail():
    columns = [ColumnMapping("id", "id", nullable=False), ColumnMapping("note", "note")]
    check, _ = validator(FakeTarget(nulls={"id": 3, "note": 7}), columns=columns)

    nulls = by_kind(check.run(), ValidationKind.NULL_CONSTRAINT)
    assert len(nulls) == 1
    assert nulls[0].status == ValidationStatus.FAILED
    assert nulls[0].actual == 3
    assert nulls[0].message == "orders.id is not nullable but has 3 NULL values"


def test_missing_id_mappings_warn():
    check, ctx = validator(FakeTarget())
    [mappings] = by_kind(check.run(), ValidationKind.CUSTOM)
    assert mappings.status == ValidationStatus.WARNING

    check, ctx = validator(FakeTarget())
    ctx.id_mappings.record("orders", 1, 1)
    [mappings] = by_kind(check.run(), ValidationKind.CUSTOM)
    assert mappings.passed
    assert mappings.actual == 1


def test_keyless_table_skips_id_mapping_check():
    check, _ = validator(FakeTarget(primary_key=None))
    assert by_kind(check.run(), ValidationKind.CUSTOM) == []


def test_failed_table_is_not_compared():
    check, _ = validator(FakeTarget(), outcome=TableOutcome("orders", error="boom"))
    results = check.run()

    assert len(results) == 1
    assert results[0].status == ValidationStatus.WARNING
    assert results[0].message == "Not compared: boom"


def test_check_that_cannot_run_is_a_warning():
    check, _ = validator(FakeTarget(rows=RuntimeError("connection lost")))
    [row_count] = by_kind(check.run(), ValidationKind.ROW_COUNT)
    assert row_count.status == ValidationStatus.WARNING
    assert "connection lost" in row_count.message


@pytest.mark.parametrize("succeeded, status", [
    (10, ValidationStatus.PASSED),
    (9, ValidationStatus.WARNING),
    (8, ValidationStatus.FAILED),
])
def test_attachment_success_rate(succeeded, status):
    check, ctx = validator(FakeTarget())
    for index in range(10):
        ctx.attachments.add(AttachmentMigrationRecord(
            execution_id=ctx.execution.id,
            document_id=f"doc-{index}",
            attachment_name="file.pdf",
            status=AttachmentStatus.COMPLETED if index < succeeded else AttachmentStatus.FAILED,
        ))

    attachments = [r for r in check.run() if r.table == "attachments"]
    assert attachments[0].status == status


def test_validation_can_be_disabled():
    ctx = stage_context([planned("orders")], validate_data=False)
    result = validate_load(ctx)
    assert result.status == StageStatus.SKIPPED
    assert ctx.validations == []


def fact_validator(target, parent_outcome=None, unresolved=0):
    countries = planned("countries")
    country_id = ColumnMapping("country_id", "country_id")
    orders = planned("orders", TableKind.FACT, columns=[ColumnMapping("id", "id"), country_id])
    orders.foreign_keys = [ForeignKey(column=country_id, parent=countries.id)]
    ctx = stage_context([countries, orders])
    for table in (countries, orders):
        ctx.staged[table.id] = StagedTable(table.id, f"stg_{table.id}", "staging", [("id", "INTEGER")], rows_staged=100)
    ctx.loaded[countries.id] = parent_outcome or TableOutcome("countries", records_processed=100)
    ctx.loaded[orders.id] = TableOutcome(
        "orders",
        records_processed=100,
        metadata={"foreign_keys": {"country_id": {"parent": "countries", "unresolved": unresolved}}},
    )
    return LoadValidator(ctx, target, FakeStaging())


def test_foreign_keys_matching_parent_rows_pass():
    [foreign_key] = by_kind(fact_validator(FakeTarget()).run(), ValidationKind.FOREIGN_KEY)
    assert foreign_key.table == "orders"
    assert foreign_key.passed
    assert foreign_key.message == "Every orders.country_id value matches a countries.id"


@pytest.mark.parametrize("orphans, unresolved", [(2, 0), (0, 3), (2, 3)])
def test_orphaned_or_unresolved_foreign_keys_fail(orphans, unresolved):
    check = fact_validator(FakeTarget(orphans={"country_id": orphans}), unresolved=unresolved)
    [foreign_key] = by_kind(check.run(), ValidationKind.FOREIGN_KEY)

    assert foreign_key.status == ValidationStatus.FAILED
    assert foreign_key.actual == orphans + unresolved


def test_foreign_key_to_failed_parent_is_not_checked():
    check = fact_validator(FakeTarget(), parent_outcome=TableOutcome("countries", error="boom"))
    [foreign_key] = by_kind(check.run(), ValidationKind.FOREIGN_KEY)

    assert foreign_key.status == ValidationStatus.WARNING
    assert foreign_key.message == "orders.country_id not checked: countries was not loaded"
