"""Execution lifecycle: registry snapshots, pause, resume and cancel."""

import threading
import time

import pytest

from migration_engine.controller import ExecutionRegistry, MigrationController
from migration_engine.models.execution import ETLPipelineConfig, ExecutionStatus, StageId

from .conftest import PROJECT_ID


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.fixture
def registry():
    return ExecutionRegistry()


@pytest.fixture
def controller(shop, adapter_factory, report_sink, registry):
    config = ETLPipelineConfig(project_id=PROJECT_ID, batch_size=500, retry_delay_seconds=0)
    return MigrationController(
        config,
        shop,
        report_sink=report_sink,
        adapter_factory=adapter_factory,
        registry=registry,
    )


def start(controller):
    thread = threading.Thread(target=controller.execute, daemon=True)
    thread.start()
    return thread


def test_new_execution_is_pending(controller, registry):
    snapshot = registry.get_status(controller.execution.id)

    assert snapshot.status == ExecutionStatus.PENDING
    assert snapshot.project_id == PROJECT_ID
    assert snapshot is not controller.execution


def test_completed_execution_is_published(controller, registry):
    controller.execute()

    snapshot = registry.get_status(controller.execution.id)
    assert snapshot.status == ExecutionStatus.COMPLETED
    assert len(snapshot.stages) == 6
    assert snapshot.completed_at is not None
    assert [e.id for e in registry.list()] == [controller.execution.id]


def test_unknown_execution(registry):
    assert registry.get_status("nope") is None
    assert registry.pause("nope") is False
    assert registry.resume("nope") is False
    assert registry.cancel("nope") is False


def test_cancel_before_start(controller, report_sink):
    controller.cancel()
    controller.cancel()

    execution = controller.execute()

    assert execution.status == ExecutionStatus.CANCELLED
    assert execution.stages == []
    assert report_sink.reports == []
    assert controller.report is None


def test_pause_holds_execution_until_resumed(controller, registry, report_sink):
    execution_id = controller.execution.id
    assert registry.pause(execution_id) is True
    assert registry.pause(execution_id) is True

    thread = start(controller)
    assert wait_for(lambda: controller.execution.status == ExecutionStatus.PAUSED)
    assert registry.get_status(execution_id).status == ExecutionStatus.PAUSED
    assert controller.execution.stages == []

    assert registry.resume(execution_id) is True
    assert registry.resume(execution_id) is True
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert controller.execution.status == ExecutionStatus.COMPLETED
    assert report_sink.get(execution_id) is not None


def test_cancel_releases_paused_execution(controller, registry, report_sink):
    execution_id = controller.execution.id
    registry.pause(execution_id)

    thread = start(controller)
    assert wait_for(lambda: controller.execution.status == ExecutionStatus.PAUSED)

    registry.cancel(execution_id)
    thread.join(timeout=30)

    assert controller.execution.status == ExecutionStatus.CANCELLED
    assert registry.get_status(execution_id).status == ExecutionStatus.CANCELLED
    assert report_sink.reports == []


def test_cancel_during_stage_stops_before_next_table(controller, registry, report_sink, monkeypatch):
    from migration_engine.stages import staging

    execution_id = controller.execution.id
    original = staging.StagingArea.insert

    def insert_then_cancel(self, staged, rows):
        registry.cancel(execution_id)
        return original(self, staged, rows)

    monkeypatch.setattr(staging.StagingArea, "insert", insert_then_cancel)
    execution = controller.execute()

    assert execution.status == ExecutionStatus.CANCELLED
    extract = execution.get_stage(StageId.EXTRACT)
    assert extract.metadata["cancelled"] is True
    assert list(extract.metadata.get("tables", {})) == []
    assert len(execution.stages) == 1
    assert report_sink.reports == []


def test_pause_after_completion_is_ignored(controller, registry):
    controller.execute()

    assert registry.pause(controller.execution.id) is True
    assert registry.get_status(controller.execution.id).status == ExecutionStatus.COMPLETED
