"""Table worker pool and per-table outcome handling."""

import threading

import pytest

from migration_engine.errors import ExecutionCancelled
from migration_engine.models.execution import ErrorHandling, StageId, StageResult, StageStatus
from migration_engine.stages.base import ExecutionControl, TableOutcome, attempt_table, record_outcomes
from migration_engine.stages.pool import TableWorkerPool

from .conftest import stage_context


def worker(failing=()):
    def run(name):
        return TableOutcome(table=name, records_processed=1, error="boom" if name in failing else None)
    return run


def test_sequential_runs_in_order():
    pool = TableWorkerPool(1, ExecutionControl())
    outcomes = pool.run(["a", "b", "c"], worker())
    assert [o.table for o in outcomes] == ["a", "b", "c"]


def test_sequential_stops_after_failure():
    pool = TableWorkerPool(1, ExecutionControl(), stop_on_failure=True)
    outcomes = pool.run(["a", "b", "c"], worker(failing={"b"}))
    assert [o.table for o in outcomes] == ["a", "b"]


def test_sequential_continues_without_stop_on_failure():
    pool = TableWorkerPool(1, ExecutionControl())
    outcomes = pool.run(["a", "b", "c"], worker(failing={"a"}))
    assert [o.failed for o in outcomes] == [True, False, False]


def test_parallel_preserves_input_order_and_bounds_concurrency():
    lock = threading.Lock()
    state = {"running": 0, "peak": 0}

    def run(name):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        threading.Event().wait(0.01)
        with lock:
            state["running"] -= 1
        return TableOutcome(table=name)

    names = [f"t{i}" for i in range(8)]
    outcomes = TableWorkerPool(3, ExecutionControl()).run(names, run)

    assert [o.table for o in outcomes] == names
    assert state["peak"] <= 3


def test_cancelled_pool_starts_nothing():
    control = ExecutionControl()
    control.cancel()
    calls = []

    with pytest.raises(ExecutionCancelled):
        TableWorkerPool(2, control).run(["a", "b"], lambda name: calls.append(name))
    assert calls == []


def test_attempt_table_captures_errors():
    ctx = stage_context([])

    def work(outcome):
        outcome.expected_rows = 10
        outcome.records_processed = 4
        raise RuntimeError("duplicate key value violates unique constraint")

    outcome = attempt_table(ctx, "orders", work)

    assert outcome.failed
    assert outcome.records_failed == 6
    assert outcome.category == "DuplicateRecord"


def test_attempt_table_propagates_cancellation():
    ctx = stage_context([])
    ctx.control.cancel()
    with pytest.raises(ExecutionCancelled):
        attempt_table(ctx, "orders", lambda outcome: None)


def test_record_outcomes_policies():
    outcomes = [TableOutcome("a", records_processed=5), TableOutcome("b", records_failed=2, error="boom")]

    failed = StageResult(StageId.LOAD_DIMENSIONS)
    record_outcomes(failed, outcomes, ErrorHandling.CONTINUE_ON_ERROR)
    assert failed.status == StageStatus.FAILED
    assert failed.error_message == "1 of 2 tables failed: b"
    assert failed.records_processed == 5
    assert failed.records_failed == 2

    skipped = StageResult(StageId.LOAD_DIMENSIONS)
    record_outcomes(skipped, outcomes, ErrorHandling.SKIP_AND_LOG)
    assert skipped.status == StageStatus.COMPLETED
    assert skipped.warnings == ["Skipped b: boom"]
    assert skipped.metadata["tables"]["b"]["error"] == "boom"
