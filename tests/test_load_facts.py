"""Attachment migration into the object store."""

from contextlib import contextmanager

from migration_engine.adapters.base import AttachmentRef
from migration_engine.errors import AttachmentMigrationError
from migration_engine.models.execution import StageId, StageResult
from migration_engine.models.record import AttachmentStatus
from migration_engine.models.schema import TableKind
from migration_engine.stages.base import TableOutcome
from migration_engine.stages.load_facts import AttachmentMigrator, load_facts

from .conftest import planned, stage_context


class FakeSource:
    supports_attachments = True

    def __init__(self, attachments, broken=()):
        self.attachments = attachments
        self.broken = set(broken)
        self.downloads = 0

    def list_attachments(self, table):
        for document_id, name in self.attachments:
            yield AttachmentRef(table=table, document_id=document_id, name=name, content_type="text/plain")

    def download_attachment(self, ref):
        self.downloads += 1
        if ref.document_id in self.broken:
            raise AttachmentMigrationError(f"cannot read {ref.name}")
        return b"data"


class FakeObjectStore:
    def __init__(self):
        self.uploads = []

    def upload(self, document_id, name, data, content_type=None):
        self.uploads.append((document_id, name))
        return f"https://store.example.com/{document_id}/{name}"


class FakeTarget:
    def __init__(self, linkable=True):
        self.linkable = linkable
        self.updates = []

    def primary_key(self, table):
        return "_id"

    def update_value(self, table, key_column, key, column, value):
        self.updates.append((table, key_column, key, column, value))
        return self.linkable


def migrator(source, target, broken_table=False):
    orders = planned("orders", kind=TableKind.FACT)
    ctx = stage_context([orders], retry_attempts=2)
    ctx.object_store = FakeObjectStore()
    ctx.loaded[orders.id] = TableOutcome("orders", error="boom" if broken_table else None)
    result = StageResult(StageId.LOAD_FACTS)
    return AttachmentMigrator(ctx, source, target, result), ctx, result


def test_attachments_are_uploaded_and_linked():
    source = FakeSource([("doc-1", "a.txt"), ("doc-2", "b.txt")])
    target = FakeTarget()
    job, ctx, result = migrator(source, target)
    ctx.id_mappings.record("orders", "doc-1", "doc-1")

    job.run()

    assert ctx.object_store.uploads == [("doc-1", "a.txt"), ("doc-2", "b.txt")]
    assert ctx.attachments.succeeded == 2
    assert target.updates == [
        ("orders", "_id", "doc-1", "attachment_url", "https://store.example.com/doc-1/a.txt"),
    ]
    assert result.metadata["attachments"] == {"total": 2, "succeeded": 2, "failed": 0}
    assert result.warnings == []


def test_failed_attachment_is_retried_then_recorded():
    source = FakeSource([("doc-1", "a.txt"), ("doc-2", "b.txt")], broken={"doc-1"})
    job, ctx, result = migrator(source, FakeTarget())

    job.run()

    failed = [r for r in ctx.attachments.all() if r.status == AttachmentStatus.FAILED]
    assert len(failed) == 1
    assert failed[0].attempts == 2
    assert failed[0].error == "cannot read a.txt"
    assert source.downloads == 3
    assert result.metadata["attachments"]["failed"] == 1
    assert any("doc-1/a.txt" in w for w in result.warnings)


def test_missing_url_column_warns_once():
    source = FakeSource([("doc-1", "a.txt"), ("doc-2", "b.txt")])
    target = FakeTarget(linkable=False)
    job, ctx, result = migrator(source, target)
    ctx.id_mappings.record("orders", "doc-1", "doc-1")
    ctx.id_mappings.record("orders", "doc-2", "doc-2")

    job.run()

    assert len(target.updates) == 1
    assert len(result.warnings) == 1
    assert ctx.attachments.succeeded == 2


def test_failed_tables_are_skipped():
    source = FakeSource([("doc-1", "a.txt")])
    job, ctx, result = migrator(source, FakeTarget(), broken_table=True)

    job.run()

    assert ctx.attachments.total == 0
    assert source.downloads == 0


class FakeAdapters:
    staging_shares_target = True

    def __init__(self, source, target):
        self.source = source
        self.target = target

    @contextmanager
    def open_source(self):
        yield self.source

    @contextmanager
    def open_target(self):
        yield self.target


def test_missing_object_store_is_a_warning():
    adapters = FakeAdapters(FakeSource([("doc-1", "a.txt")]), FakeTarget())
    ctx = stage_context([planned("customers")], adapters=adapters)

    result = load_facts(ctx)

    assert result.succeeded
    assert any("no object store" in w for w in result.warnings)
