"""FastAPI application entry point."""

import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..services.repository import JsonFileReportSink, JsonMappingRepository
from .routes import executions
from .service import ExecutionService


def create_app(service: Optional[ExecutionService] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        service: Execution service to expose. By default projects are read
            from MIGRATION_PROJECTS_DIR and reports written to MIGRATION_REPORTS_DIR.
    """
    if service is None:
        service = ExecutionService(
            JsonMappingRepository(os.environ.get("MIGRATION_PROJECTS_DIR")),
            report_sink=JsonFileReportSink(os.environ.get("MIGRATION_REPORTS_DIR", "./logs")),
        )

    app = FastAPI(
        title="ETL Migration Engine API",
        description="Start, monitor and control database migration executions",
        version=__version__,
    )
    app.state.execution_service = service

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(executions.router, prefix="/api/executions", tags=["executions"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
