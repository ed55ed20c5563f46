"""Per-table lines of the migration report."""

from migration_engine.models.schema import TableKind
from migration_engine.stages.base import TableOutcome
from migration_engine.stages.report import build_table_details

from .conftest import planned, stage_context


def test_details_count_mappings_and_repeated_source_keys():
    countries = planned("countries")
    orders = planned("orders", TableKind.FACT)
    ctx = stage_context([countries, orders])
    ctx.loaded[countries.id] = TableOutcome("countries", records_processed=2)
    ctx.loaded[orders.id] = TableOutcome("orders", records_processed=3)
    ctx.id_mappings.record_many("countries", [(1, 10), (2, 11)])
    ctx.id_mappings.record_many("orders", [(7, 7), (8, 8), (7, 9)])

    details = {detail.target_table: detail for detail in build_table_details(ctx)}

    assert details["countries"].id_mappings == 2
    assert details["countries"].duplicate_ids == 0
    assert details["orders"].id_mappings == 2
    assert details["orders"].duplicate_ids == 1
    assert details["orders"].to_dict()["duplicate_ids"] == 1
    assert details["orders"].status == "completed"


def test_table_that_never_loaded():
    ctx = stage_context([planned("countries")])

    [detail] = build_table_details(ctx)

    assert detail.status == "not-loaded"
    assert detail.staged_rows is None
    assert detail.duplicate_ids == 0
