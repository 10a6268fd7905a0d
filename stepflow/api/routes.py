from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from typing import Dict, Any, Optional
from pydantic import BaseModel, ValidationError
import logging

from stepflow.config import Settings, get_settings
from stepflow.connectors import ConnectorRegistry, HttpActionClient, ToolCatalog
from stepflow.engine import InvocationRequest, PipelineExecutor, RuntimeContext, WorkflowEngine, check_prerequisites
from stepflow.engine.errors import (
    CompileError, DefinitionStoreError, GraphError, StepflowError, WorkflowNotFoundError,
)
from stepflow.engine.models import WorkflowDefinition
from stepflow.samples import SAMPLE_ACTIONS, create_url_digest_workflow
from stepflow.store import create_store

logger = logging.getLogger(__name__)

router = APIRouter()


def build_engine(settings: Settings) -> WorkflowEngine:
    """Wire store, connectors and executor from settings."""
    specs = list(SAMPLE_ACTIONS)
    if settings.catalog_path:
        specs += ToolCatalog.from_file(settings.catalog_path).list_actions()

    registry = ConnectorRegistry.create_default(
        HttpActionClient.from_settings(settings),
        catalog=ToolCatalog(specs),
    )
    executor = PipelineExecutor(
        registry,
        max_concurrency=settings.max_concurrency,
        timeout=settings.pipeline_timeout_s,
        step_timeout=settings.step_timeout_s,
    )
    return WorkflowEngine(create_store(settings), registry, executor, max_runs=settings.max_runs)


def seed_samples(workflow_engine: WorkflowEngine) -> None:
    """Store the sample workflows unless a definition with the same id already exists."""
    sample = create_url_digest_workflow()
    try:
        workflow_engine.get_workflow(sample.id)
    except WorkflowNotFoundError:
        workflow_engine.save_workflow(sample)
        logger.info(f"Seeded sample workflow {sample.id}")


# Global instance - initialized once when module loads
engine = build_engine(get_settings())
if get_settings().seed_samples:
    seed_samples(engine)


def status_for(error: StepflowError) -> int:
    """HTTP status for an engine error that escaped to the API."""
    if isinstance(error, WorkflowNotFoundError):
        return 404
    if isinstance(error, (GraphError, CompileError)):
        return 422
    if isinstance(error, DefinitionStoreError):
        return 400
    return 500


# Request/Response models
class BindingsRequest(BaseModel):
    connection_bindings: Dict[str, str] = {}
    table_bindings: Dict[str, str] = {}


class ExecuteRequest(BindingsRequest):
    inputs: Dict[str, Any] = {}
    resource_id: Optional[str] = None

    def to_invocation(self, workflow_id: str) -> InvocationRequest:
        return InvocationRequest(workflow_id=workflow_id, **self.model_dump())


class SaveWorkflowResponse(BaseModel):
    workflow_id: str
    version: int
    message: str


@router.post("/workflows", response_model=SaveWorkflowResponse)
async def save_workflow(definition: WorkflowDefinition):
    """
    Create or replace a workflow definition.

    The definition is validated before it is stored; a structurally broken
    graph is rejected with 422 and never persisted.
    """
    stored = engine.save_workflow(definition)
    return SaveWorkflowResponse(
        workflow_id=stored.id,
        version=stored.version,
        message=f"Workflow '{stored.name}' saved"
    )


@router.get("/workflows")
async def list_workflows():
    """List all stored workflows with summary information."""
    return {"workflows": engine.store.list()}


@router.get("/workflows/{workflow_id}")
async def get_workflow(workflow_id: str):
    return engine.get_workflow(workflow_id).model_dump(mode="json")


@router.delete("/workflows/{workflow_id}")
async def delete_workflow(workflow_id: str):
    engine.store.delete(workflow_id)
    return {"message": f"Workflow '{workflow_id}' deleted"}


@router.post("/workflows/{workflow_id}/validate")
async def validate_workflow(workflow_id: str, request: Optional[BindingsRequest] = None):
    """
    Validate and compile a stored workflow without running it.

    Returns the compiled step order. When bindings are supplied, also reports
    the connections and tables an execution with them would be missing.
    """
    definition = engine.get_workflow(workflow_id)
    pipeline = engine.compile_definition(definition)
    bindings = request or BindingsRequest()
    prerequisites = check_prerequisites(definition, RuntimeContext(**bindings.model_dump()))
    return {
        "workflow_id": workflow_id,
        "valid": True,
        "order": pipeline.step_ids,
        "prerequisites": prerequisites,
    }


@router.post("/workflows/{workflow_id}/generate")
async def generate_code(workflow_id: str, save: bool = True):
    """Render the compiled workflow as python source, stored next to the definition by default."""
    code, path = engine.generate_code(workflow_id, save=save)
    return {"workflow_id": workflow_id, "code": code, "path": path}


@router.post("/workflows/{workflow_id}/execute")
async def execute_workflow(workflow_id: str, request: ExecuteRequest):
    """
    Execute a stored workflow and wait for its result.

    Step failures do not produce an HTTP error: the response carries
    ``success: false`` with the error and every step result gathered.
    """
    run = await engine.run_workflow(request.to_invocation(workflow_id))
    return {
        "run_id": run.run_id,
        "workflow_id": run.workflow_id,
        **jsonable_encoder(run.result),
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str):
    """Get the current state of an ongoing or completed workflow run."""
    run = engine.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Workflow run not found")
    return jsonable_encoder(run)


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str):
    if not engine.cancel_run(run_id):
        raise HTTPException(status_code=404, detail="No active run with that id")
    return {"run_id": run_id, "message": "Cancellation requested"}


@router.get("/tools")
async def list_tools():
    """List the registered connectors and the catalog of known remote actions."""
    return {
        "connectors": engine.registry.list_connectors(),
        "actions": [spec.model_dump() for spec in engine.registry.catalog.list_actions()],
    }


@router.get("/memory/stats")
async def get_memory_stats():
    """Get current memory usage statistics for monitoring."""
    return engine.get_memory_stats()


@router.post("/memory/cleanup")
async def cleanup_memory():
    """Drop finished runs from memory. Runs still in progress are kept."""
    removed = engine.cleanup_runs()
    return {"removed_runs": removed, "stats": engine.get_memory_stats()}


@router.websocket("/ws/workflows/{workflow_id}/execute")
async def websocket_execute(websocket: WebSocket, workflow_id: str):
    """
    Execute a workflow and stream its events.

    The client sends one JSON message with the execute payload (inputs and
    bindings); every event is then sent as ``{event, data, timestamp}`` in
    emission order, ending with ``done``. Disconnecting cancels the run.
    """
    await websocket.accept()

    try:
        payload = await websocket.receive_json()
        request = ExecuteRequest(**(payload or {}))
    except WebSocketDisconnect:
        return
    except (ValueError, TypeError, ValidationError) as e:
        await websocket.send_json({"event": "error", "data": {"error": f"Invalid request: {e}", "code": "invalid_request"}})
        await websocket.close()
        return

    events = engine.stream_workflow(request.to_invocation(workflow_id))
    try:
        async for event in events:
            await websocket.send_json(jsonable_encoder(event.to_message()))
    except WebSocketDisconnect:
        logger.info(f"Client disconnected while streaming workflow {workflow_id}")
        return
    except StepflowError as e:
        # Load, validation and compile failures surface before the first event
        await websocket.send_json({"event": "error", "data": e.to_dict()})
    finally:
        await events.aclose()

    await websocket.close()
