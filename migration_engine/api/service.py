"""Execution service shared by the API routes."""

import logging
from typing import Any, Dict, Optional

from ..controller import ExecutionRegistry, MigrationController
from ..models.execution import ETLExecution, ETLPipelineConfig
from ..services.repository import MappingRepository

logger = logging.getLogger(__name__)


class ExecutionService:
    """
    Creates controllers for API requests and exposes the registry.

    Controller keyword arguments (report sink, adapter factory, object
    store) are fixed when the service is built.
    """

    def __init__(
        self,
        repository: MappingRepository,
        registry: Optional[ExecutionRegistry] = None,
        **controller_kwargs: Any
    ):
        self.repository = repository
        self.registry = registry or ExecutionRegistry()
        self.controller_kwargs = controller_kwargs

    def prepare(self, data: Dict[str, Any]) -> MigrationController:
        """Validate a configuration and register a pending execution for it."""
        config = ETLPipelineConfig.from_dict(data)
        if self.registry.get_status(config.execution_id) is not None:
            raise ValueError(f"Execution {config.execution_id} already exists")
        return MigrationController(config, self.repository, registry=self.registry, **self.controller_kwargs)

    def run(self, controller: MigrationController) -> None:
        """Background entry point; failures end up on the execution."""
        execution = controller.execute()
        logger.info(f"Execution {execution.id} finished with status {execution.status.value}")

    def get_status(self, execution_id: str) -> Optional[ETLExecution]:
        return self.registry.get_status(execution_id)
