from typing import Dict, Any, AsyncIterator, Optional, Tuple, TYPE_CHECKING
import asyncio
from datetime import datetime
import logging

from .codegen import generate
from .compiler import CompiledPipeline, compile_pipeline
from .executor import CancellationToken, EventCallback, PipelineExecutor
from .models import (
    EventType, ExecutionEvent, ExecutionRun, InvocationRequest, PipelineState,
    RuntimeContext, StepType, WorkflowDefinition,
)
from .validator import ValidatedGraph, validate

if TYPE_CHECKING:
    from stepflow.connectors.registry import ConnectorRegistry
    from stepflow.store.definitions import DefinitionStore

logger = logging.getLogger(__name__)


def check_prerequisites(definition: WorkflowDefinition, context: RuntimeContext) -> Dict[str, Any]:
    """
    List what an execution would be missing before anything runs.

    Reports toolkits with no connection binding and table refs with no table
    binding. Purely informational: the connectors enforce the same rules.
    """
    toolkits = sorted({
        n.toolkit_slug for n in definition.nodes
        if n.type == StepType.REMOTE_TOOL and n.toolkit_slug
    })
    tables = sorted({
        n.table_ref for n in definition.nodes
        if n.type in (StepType.TABLE_QUERY, StepType.TABLE_WRITE) and n.table_ref
    })
    missing_connections = [t for t in toolkits if t not in context.connection_bindings]
    missing_tables = [t for t in tables if t not in context.table_bindings]
    return {
        "valid": not missing_connections and not missing_tables,
        "missing_connections": missing_connections,
        "missing_tables": missing_tables,
    }


class WorkflowEngine:
    """Loads, validates, compiles and runs stored workflows"""

    def __init__(
        self,
        store: "DefinitionStore",
        registry: "ConnectorRegistry",
        executor: Optional[PipelineExecutor] = None,
        max_runs: Optional[int] = None,
    ):
        """
        Args:
            store: definition store the engine reads workflows from
            registry: connector registry (and its tool catalog)
            executor: pipeline executor; a sequential one is built when omitted
            max_runs: finished runs kept for get_run; None keeps them all
        """
        self.store = store
        self.registry = registry
        self.executor = executor or PipelineExecutor(registry)
        self.runs: Dict[str, ExecutionRun] = {}  # Active/completed executions by run id
        self.cancel_tokens: Dict[str, CancellationToken] = {}  # Only for runs still in progress
        self.max_runs = max_runs

    def save_workflow(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a definition. It must validate first so broken graphs never get persisted."""
        validate(self._hydrate(definition))
        return self.store.save(definition)

    def get_workflow(self, workflow_id: str) -> WorkflowDefinition:
        return self.store.load(workflow_id)

    def validate_workflow(self, workflow_id: str) -> ValidatedGraph:
        return validate(self._hydrate(self.store.load(workflow_id)))

    def compile_workflow(self, workflow_id: str) -> CompiledPipeline:
        """Fresh compile of the stored definition. Raises GraphError / CompileError."""
        return self.compile_definition(self.store.load(workflow_id))

    def compile_definition(self, definition: WorkflowDefinition) -> CompiledPipeline:
        return compile_pipeline(validate(self._hydrate(definition)))

    def generate_code(self, workflow_id: str, save: bool = True) -> Tuple[str, Optional[str]]:
        """Render the compiled workflow as python; optionally store it next to the definition."""
        code = generate(self.compile_workflow(workflow_id))
        path = self.store.save_generated(workflow_id, code) if save else None
        return code, path

    async def run_workflow(
        self,
        request: InvocationRequest,
        on_event: Optional[EventCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionRun:
        """
        Execute a stored workflow from start to finish.

        Graph and compile errors propagate before a run record exists; anything
        that goes wrong while steps run is captured in the run's result.
        """
        pipeline = self.compile_workflow(request.workflow_id)
        run = self._start_run(request.workflow_id, cancel_token)
        await self._execute(run, pipeline, request.to_context(), on_event)
        return run

    async def stream_workflow(
        self,
        request: InvocationRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Execute a stored workflow, yielding its lifecycle events in order.

        Compilation happens before the first event, so graph and compile errors
        raise instead of yielding.
        """
        pipeline = self.compile_workflow(request.workflow_id)
        run = self._start_run(request.workflow_id, cancel_token)
        queue: "asyncio.Queue[Optional[ExecutionEvent]]" = asyncio.Queue()

        async def execute() -> None:
            try:
                await self._execute(run, pipeline, request.to_context(), queue.put)
            finally:
                await queue.put(None)

        task = asyncio.create_task(execute())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            if not task.done():
                self.cancel_run(run.run_id)
                await task

    def cancel_run(self, run_id: str) -> bool:
        """Request cooperative cancellation; False when the run is unknown or already finished."""
        token = self.cancel_tokens.get(run_id)
        if token is None:
            return False
        token.cancel()
        logger.info(f"[{run_id}] Cancellation requested")
        return True

    def get_run(self, run_id: str) -> Optional[ExecutionRun]:
        """Retrieve a workflow run by its unique ID."""
        return self.runs.get(run_id)

    def cleanup_runs(self) -> int:
        """Forget every finished run. Runs still in progress are kept. Returns how many were removed."""
        finished = [run_id for run_id in self.runs if run_id not in self.cancel_tokens]
        for run_id in finished:
            del self.runs[run_id]
        if finished:
            logger.info(f"Cleaned up {len(finished)} finished runs")
        return len(finished)

    def get_memory_stats(self) -> Dict[str, Any]:
        """Counts of what the engine currently holds in memory."""
        return {
            "runs": len(self.runs),
            "max_runs": self.max_runs,
            "active_runs": len(self.cancel_tokens),
            "connectors": len(self.registry.list_connectors()),
            "catalog_actions": len(self.registry.catalog),
            "total_step_results": sum(
                len(run.result.step_results) for run in self.runs.values() if run.result
            ),
        }

    def _hydrate(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return self.registry.catalog.hydrate(definition)

    def _start_run(self, workflow_id: str, cancel_token: Optional[CancellationToken]) -> ExecutionRun:
        run = ExecutionRun.create(workflow_id)
        self.runs[run.run_id] = run
        self.cancel_tokens[run.run_id] = cancel_token or CancellationToken()
        return run

    def _evict_finished_runs(self) -> None:
        if self.max_runs is None:
            return
        finished = [run_id for run_id in self.runs if run_id not in self.cancel_tokens]
        excess = len(finished) - self.max_runs
        for run_id in finished[:max(excess, 0)]:
            del self.runs[run_id]

    async def _execute(
        self,
        run: ExecutionRun,
        pipeline: CompiledPipeline,
        context: RuntimeContext,
        on_event: Optional[EventCallback],
    ) -> None:
        async def track(event: ExecutionEvent) -> None:
            # Keep the run record in step with the events before forwarding them
            step_id = event.data.get("step_id")
            if event.event == EventType.STEP_START:
                run.state = PipelineState.RUNNING
                run.current_steps.append(step_id)
            elif event.event in (EventType.STEP_COMPLETE, EventType.STEP_ERROR) and step_id in run.current_steps:
                run.current_steps.remove(step_id)
            if on_event is not None:
                maybe = on_event(event)
                if asyncio.iscoroutine(maybe):
                    await maybe

        try:
            result = await self.executor.execute(
                pipeline,
                context,
                cancel_token=self.cancel_tokens[run.run_id],
                on_event=track,
                run_id=run.run_id,
            )
            run.result = result
            run.state = result.state
        finally:
            run.completed_at = datetime.now()
            run.current_steps = []
            self.cancel_tokens.pop(run.run_id, None)
            if not run.state.is_terminal:
                run.state = PipelineState.FAILED
            self._evict_finished_runs()
