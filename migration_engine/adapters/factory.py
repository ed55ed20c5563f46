"""Builds adapters for the connections of a migration project."""

import logging
from typing import Callable, Dict

from ..errors import ConfigurationError
from ..models.execution import StagingConfig
from ..models.schema import Connection, ConnectionRole, EngineType
from .base import DatabaseAdapter
from .couchdb import CouchDbAdapter
from .mongodb import MongoAdapter
from .sql import SqlAdapter, engine_type_for_url

logger = logging.getLogger(__name__)

ADAPTERS: Dict[EngineType, Callable[..., DatabaseAdapter]] = {
    EngineType.POSTGRES: SqlAdapter,
    EngineType.MYSQL: SqlAdapter,
    EngineType.SQLSERVER: SqlAdapter,
    EngineType.MONGODB: MongoAdapter,
    EngineType.COUCHDB: CouchDbAdapter,
}


def create_adapter(connection: Connection, **kwargs) -> DatabaseAdapter:
    """Create the adapter registered for a connection's engine."""
    adapter_class = ADAPTERS.get(connection.engine_type)
    if adapter_class is None:
        raise ConfigurationError(f"No adapter registered for {connection.engine_type.value}")
    return adapter_class(connection, **kwargs)


class AdapterFactory:
    """
    Opens fresh adapters for the source, the target and the staging area.

    Stages call these at entry and close what they opened on exit.
    Subclasses (or tests) override the three ``open_*`` methods to supply
    pre-built engines or clients.
    """

    def __init__(self, source: Connection, target: Connection, staging: StagingConfig):
        self.source_connection = source
        self.target_connection = target
        self.staging_config = staging

    @property
    def staging_shares_target(self) -> bool:
        """Staging tables live in the target database (enables INSERT ... SELECT)."""
        return not self.staging_config.database_url and self.target_connection.engine_type.is_relational

    def open_source(self) -> DatabaseAdapter:
        return create_adapter(self.source_connection)

    def open_target(self) -> DatabaseAdapter:
        return create_adapter(self.target_connection)

    def open_staging(self) -> SqlAdapter:
        """
        Adapter for the staging database.

        Raises:
            ConfigurationError: if no relational database can host staging
        """
        url = self.staging_config.database_url
        if url:
            connection = Connection(
                engine_type=engine_type_for_url(url),
                database="staging",
                role=ConnectionRole.TARGET,
                name="staging",
            )
            return SqlAdapter(connection, url=url)

        if not self.target_connection.engine_type.is_relational:
            raise ConfigurationError(
                f"Staging needs a relational database; set staging.database_url "
                f"when the target is {self.target_connection.engine_type.value}"
            )
        return SqlAdapter(self.target_connection)
