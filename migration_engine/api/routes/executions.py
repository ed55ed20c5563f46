"""Execution start, status and lifecycle endpoints."""

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from ...errors import ConfigurationError
from ..models import (
    ExecutionAction,
    ExecutionActionResponse,
    ExecutionListResponse,
    ExecutionResponse,
    ExecutionStartRequest,
    ExecutionStartResponse,
)
from ..service import ExecutionService

router = APIRouter()


def get_service(request: Request) -> ExecutionService:
    return request.app.state.execution_service


@router.post("", response_model=ExecutionStartResponse)
async def start_execution(data: ExecutionStartRequest, request: Request, background_tasks: BackgroundTasks):
    """Start a pipeline execution in the background."""
    service = get_service(request)
    try:
        controller = service.prepare(data.model_dump(mode="json"))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(service.run, controller)
    return ExecutionStartResponse(status="started", execution_id=controller.execution.id)


@router.get("", response_model=ExecutionListResponse)
async def list_executions(request: Request):
    """List all known executions."""
    executions = [e.to_dict() for e in get_service(request).registry.list()]
    return ExecutionListResponse(executions=executions, total=len(executions))


@router.get("/{execution_id}", response_model=ExecutionResponse)
async def get_execution(execution_id: str, request: Request):
    """Get the latest status of an execution."""
    execution = get_service(request).get_status(execution_id)
    if not execution:
        raise HTTPException(status_code=404, detail="Execution not found")
    return execution.to_dict()


@router.post("/{execution_id}/{action}", response_model=ExecutionActionResponse)
async def control_execution(execution_id: str, action: str, request: Request):
    """Pause, resume or cancel an execution. Repeating an action is harmless."""
    try:
        action = ExecutionAction(action)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown action: {action}")

    registry = get_service(request).registry
    handler = {
        ExecutionAction.PAUSE: registry.pause,
        ExecutionAction.RESUME: registry.resume,
        ExecutionAction.CANCEL: registry.cancel,
    }[action]
    if not handler(execution_id):
        raise HTTPException(status_code=404, detail="Execution not found")

    execution = registry.get_status(execution_id)
    return ExecutionActionResponse(execution_id=execution_id, action=action, status=execution.status.value)
