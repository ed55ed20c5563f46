"""Service layer for the migration engine."""

from .auto_mapper import AutoMappingSuggester
from .id_mapping import AttachmentTracker, IdMappingTracker
from .object_store import ObjectStoreClient
from .preview import generate_preview
from .repository import (
    InMemoryMappingRepository,
    InMemoryReportSink,
    JsonFileReportSink,
    JsonMappingRepository,
    MappingRepository,
    ReportSink,
)
from .retry import retry_with_backoff
from .transformer import TransformEngine

__all__ = [
    "AutoMappingSuggester",
    "AttachmentTracker",
    "IdMappingTracker",
    "ObjectStoreClient",
    "generate_preview",
    "InMemoryMappingRepository",
    "InMemoryReportSink",
    "JsonFileReportSink",
    "JsonMappingRepository",
    "MappingRepository",
    "ReportSink",
    "retry_with_backoff",
    "TransformEngine",
]
