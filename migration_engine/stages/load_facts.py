"""Stage 4: load fact tables and migrate document attachments."""

import logging
from functools import partial

import requests

from ..adapters.base import AttachmentRef, DatabaseAdapter
from ..errors import AttachmentMigrationError, DatabaseConnectionError
from ..models.execution import StageId, StageResult
from ..models.record import AttachmentMigrationRecord, AttachmentStatus
from .base import StageContext
from .loading import run_load_stage

logger = logging.getLogger(__name__)

# Target column that receives the object-store URL of a record's attachment
ATTACHMENT_URL_COLUMN = "attachment_url"

_TRANSIENT_ERRORS = (AttachmentMigrationError, DatabaseConnectionError, requests.exceptions.RequestException)


def load_facts(ctx: StageContext) -> StageResult:
    """Load fact tables, then move attachments when the source stores them."""

    def migrate_attachments(target: DatabaseAdapter, result: StageResult) -> None:
        with ctx.adapters.open_source() as source:
            if not source.supports_attachments:
                return
            if ctx.object_store is None:
                result.add_warning("Source stores attachments but no object store is configured; none migrated")
                return
            AttachmentMigrator(ctx, source, target, result).run()

    return run_load_stage(StageId.LOAD_FACTS, ctx, ctx.plan.facts, after_load=migrate_attachments)


class AttachmentMigrator:
    """
    Copies attachments of loaded documents into the object store.

    Each attachment is retried on its own; failures are recorded and
    never fail the stage.
    """

    def __init__(self, ctx: StageContext, source: DatabaseAdapter, target: DatabaseAdapter, result: StageResult):
        self.ctx = ctx
        self.source = source
        self.target = target
        self.result = result

    def run(self) -> None:
        logger.info("Migrating attachments")
        for planned in self.ctx.plan.tables:
            self.ctx.control.check()
            outcome = self.ctx.loaded.get(planned.id)
            if outcome is None or outcome.failed:
                continue
            try:
                self._migrate_table(planned.source_table, planned.target_table)
            except (DatabaseConnectionError, requests.exceptions.RequestException) as e:
                logger.error(f"Could not list attachments of {planned.source_table}: {e}")
                self.result.add_warning(f"Attachments of {planned.source_table} not migrated: {e}")

        attachments = self.ctx.attachments
        self.result.metadata["attachments"] = {
            "total": attachments.total,
            "succeeded": attachments.succeeded,
            "failed": attachments.failed,
        }
        logger.info(f"Migrated {attachments.succeeded}/{attachments.total} attachments")

    def _migrate_table(self, source_table: str, target_table: str) -> None:
        target_key = self.target.primary_key(target_table)
        link_missing = False

        for ref in self.source.list_attachments(source_table):
            record = AttachmentMigrationRecord(
                execution_id=self.ctx.execution.id,
                document_id=ref.document_id,
                attachment_name=ref.name,
                source_url=ref.source_url,
                content_type=ref.content_type,
                size=ref.size,
            )
            try:
                record.target_url = self.ctx.retry(
                    partial(self._transfer, ref, record),
                    description=f"Attachment {ref.document_id}/{ref.name}",
                    retry_on=_TRANSIENT_ERRORS,
                )
                record.status = AttachmentStatus.COMPLETED
            except Exception as e:
                record.status = AttachmentStatus.FAILED
                record.error = str(e)
                logger.error(f"Attachment {ref.document_id}/{ref.name} failed: {e}")
                self.result.add_warning(f"Attachment {ref.document_id}/{ref.name} failed: {e}")
            self.ctx.attachments.add(record)

            if record.status != AttachmentStatus.COMPLETED or link_missing:
                continue
            target_id = self.ctx.id_mappings.resolve(target_table, ref.document_id)
            if target_id is None or target_key is None:
                continue
            if not self.target.update_value(target_table, target_key, target_id, ATTACHMENT_URL_COLUMN, record.target_url):
                link_missing = True
                self.result.add_warning(
                    f"{target_table} has no {ATTACHMENT_URL_COLUMN} column or record; attachment URLs not linked"
                )

    def _transfer(self, ref: AttachmentRef, record: AttachmentMigrationRecord) -> str:
        record.attempts += 1
        data = self.source.download_attachment(ref)
        return self.ctx.object_store.upload(ref.document_id, ref.name, data, ref.content_type)
