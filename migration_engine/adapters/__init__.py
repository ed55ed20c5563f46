"""Database engine adapters."""

from .base import AttachmentRef, DatabaseAdapter, LoadSession
from .couchdb import CouchDbAdapter
from .factory import AdapterFactory, create_adapter
from .mongodb import MongoAdapter
from .sql import SqlAdapter

__all__ = [
    "AttachmentRef",
    "DatabaseAdapter",
    "LoadSession",
    "SqlAdapter",
    "MongoAdapter",
    "CouchDbAdapter",
    "AdapterFactory",
    "create_adapter",
]
