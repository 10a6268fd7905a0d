"""
Runtime executor.

Runs a CompiledPipeline against a RuntimeContext:

    pending -> running -> (step running)* -> completed | failed | cancelled

Steps are dispatched in compiled order once every step they depend on has
succeeded. By default one step runs at a time; callers may opt into running
independent branches concurrently up to ``max_concurrency``. The first step
failure halts further dispatch (fail-fast, no retry); results gathered so far
are always returned.
"""

from collections.abc import Mapping
from copy import deepcopy
from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Iterator, List, Optional, Tuple, Union
import asyncio
import logging
import uuid

from .compiler import CompiledPipeline, CompiledStep
from .errors import (
    CancellationError, ConnectorError, InvalidInputsError, PipelineTimeoutError,
    StepflowError, StepTimeoutError,
)
from .models import (
    EventType, ExecutionEvent, ExecutionResult, PipelineState, RuntimeContext,
    StepResult, StepStatus,
)

if TYPE_CHECKING:
    from stepflow.connectors.registry import ConnectorRegistry

logger = logging.getLogger(__name__)

EventCallback = Callable[[ExecutionEvent], Union[None, Awaitable[None]]]


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a run."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class OutputMap(Mapping):
    """Append-only map of step id -> output. A slot can be written once."""

    def __init__(self):
        self._slots: Dict[str, Any] = {}

    def put(self, step_id: str, value: Any) -> None:
        if step_id in self._slots:
            raise RuntimeError(f"Output for step '{step_id}' already recorded")
        self._slots[step_id] = value

    def __getitem__(self, step_id: str) -> Any:
        return self._slots[step_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._slots)

    def __len__(self) -> int:
        return len(self._slots)


class _RunState:
    """Mutable bookkeeping for one execution; never shared between runs."""

    def __init__(self, run_id: str, pipeline: CompiledPipeline, context: RuntimeContext,
                 inputs: Dict[str, Any], on_event: Optional[EventCallback]):
        self.run_id = run_id
        self.pipeline = pipeline
        self.context = context
        self.inputs = inputs
        self.on_event = on_event
        self.state = PipelineState.PENDING
        self.outputs = OutputMap()
        self.results: Dict[str, StepResult] = {}
        self.abort_error: Optional[StepflowError] = None  # why in-flight steps were cancelled


class PipelineExecutor:
    """Drives connectors through a compiled pipeline."""

    def __init__(
        self,
        registry: "ConnectorRegistry",
        max_concurrency: int = 1,
        timeout: Optional[float] = None,
        step_timeout: Optional[float] = None,
    ):
        """
        Args:
            registry: resolves each step to its connector
            max_concurrency: steps allowed in flight at once; 1 keeps runs strictly sequential
            timeout: overall run timeout in seconds
            step_timeout: per-step timeout in seconds
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.registry = registry
        self.max_concurrency = max_concurrency
        self.timeout = timeout
        self.step_timeout = step_timeout

    async def execute(
        self,
        pipeline: CompiledPipeline,
        context: RuntimeContext,
        cancel_token: Optional[CancellationToken] = None,
        on_event: Optional[EventCallback] = None,
        run_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Execute a pipeline and return its ExecutionResult.

        Connector, timeout and cancellation failures are captured in the result
        rather than raised. Events are passed to ``on_event`` in emission order.
        """
        token = cancel_token or CancellationToken()
        run = _RunState(run_id or str(uuid.uuid4()), pipeline, context, {}, on_event)

        try:
            run.inputs = self._effective_inputs(pipeline, context)
        except InvalidInputsError as e:
            logger.error(f"[{run.run_id}] Rejected inputs: {e.message}")
            return await self._finish(run, PipelineState.FAILED, e)

        run.state = PipelineState.RUNNING
        logger.info(f"[{run.run_id}] Running workflow {pipeline.workflow_id} ({len(pipeline.steps)} steps)")

        failure = await self._dispatch(run, token)

        if failure is not None:
            return await self._finish(run, PipelineState.FAILED, failure)
        if len(run.outputs) < len(pipeline.steps):
            return await self._finish(run, PipelineState.CANCELLED, CancellationError("Execution cancelled"))
        return await self._finish(run, PipelineState.COMPLETED)

    async def stream(
        self,
        pipeline: CompiledPipeline,
        context: RuntimeContext,
        cancel_token: Optional[CancellationToken] = None,
        run_id: Optional[str] = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Execute a pipeline, yielding lifecycle events as they happen.

        The last event is always ``done``. Closing the iterator early cancels
        the run.
        """
        token = cancel_token or CancellationToken()
        queue: "asyncio.Queue[Optional[ExecutionEvent]]" = asyncio.Queue()

        async def run() -> ExecutionResult:
            try:
                return await self.execute(pipeline, context, cancel_token=token, on_event=queue.put, run_id=run_id)
            finally:
                await queue.put(None)  # end of stream

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await task
        finally:
            if not task.done():
                token.cancel()
                await task

    async def _dispatch(self, run: _RunState, token: CancellationToken) -> Optional[StepflowError]:
        """Main scheduling loop. Returns the error that failed the run, if any."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout else None
        waiting: List[CompiledStep] = list(run.pipeline.steps)
        in_flight: Dict[asyncio.Task, CompiledStep] = {}
        succeeded = set()
        failure: Optional[StepflowError] = None
        cancel_waiter = asyncio.ensure_future(token.wait())

        try:
            while True:
                # Cancellation is checked before every dispatch
                while failure is None and not token.cancelled and len(in_flight) < self.max_concurrency:
                    step = next((s for s in waiting if all(d in succeeded for d in s.depends_on)), None)
                    if step is None:
                        break
                    waiting.remove(step)
                    task = asyncio.create_task(self._run_step(run, step))
                    in_flight[task] = step

                if not in_flight:
                    break

                remaining = None
                if deadline is not None:
                    remaining = max(deadline - loop.time(), 0)
                watch = set(in_flight)
                if not cancel_waiter.done():
                    watch.add(cancel_waiter)
                done, _ = await asyncio.wait(watch, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)

                if not done:
                    failure = PipelineTimeoutError(
                        f"Workflow exceeded its {self.timeout}s timeout",
                        {"timeout": self.timeout},
                    )
                    logger.error(f"[{run.run_id}] {failure.message}")
                    run.abort_error = failure
                    for task in in_flight:
                        task.cancel()
                    done, _ = await asyncio.wait(set(in_flight))

                if cancel_waiter in done:
                    done.discard(cancel_waiter)
                    logger.info(f"[{run.run_id}] Cancellation requested")
                    for task, step in in_flight.items():
                        if self._is_cancellable(step):
                            task.cancel()

                for task in done:
                    step = in_flight.pop(task)
                    if task.cancelled():
                        continue  # cancelled before it ever started: not attempted
                    result, error = task.result()
                    run.results[step.step_id] = result
                    if result.status == StepStatus.SUCCESS:
                        succeeded.add(step.step_id)
                    elif result.status == StepStatus.ERROR and failure is None:
                        failure = error
        finally:
            cancel_waiter.cancel()
            for task in in_flight:
                task.cancel()

        return failure

    def _is_cancellable(self, step: CompiledStep) -> bool:
        try:
            return self.registry.resolve(step.node.type, step.node.toolkit_slug).cancellable
        except ConnectorError:
            return True  # never reached a connector

    async def _run_step(self, run: _RunState, step: CompiledStep) -> Tuple[StepResult, Optional[StepflowError]]:
        """Execute one step. Never raises; the outcome is in the returned StepResult."""
        node = step.node
        started_at = datetime.now()

        try:
            await self._emit(run, EventType.STEP_START, {
                "step_id": node.id,
                "step_name": node.display_name,
                "index": step.index,
            })
            logger.info(f"[{run.run_id}] {node.id}: Executing step {node.display_name}")
            step_input = step.input_mapper.build(run.outputs, run.inputs)
            connector = self.registry.resolve(node.type, node.toolkit_slug)
            call = connector.execute(node, step_input, run.context)
            if self.step_timeout:
                try:
                    output = await asyncio.wait_for(call, self.step_timeout)
                except asyncio.TimeoutError:
                    raise StepTimeoutError(
                        f"Step '{node.id}' exceeded its {self.step_timeout}s timeout",
                        {"step_id": node.id, "timeout": self.step_timeout},
                    )
            else:
                output = await call
            try:
                snapshot = deepcopy(output)
            except Exception as e:
                raise ConnectorError(
                    f"Step '{node.id}' returned an output that cannot be copied: {type(e).__name__}: {e}",
                    {"step_id": node.id},
                )
        except asyncio.CancelledError:
            error = run.abort_error or CancellationError(f"Step '{node.id}' cancelled")
            status = StepStatus.ERROR if run.abort_error else StepStatus.CANCELLED
            return await self._step_failed(run, step, started_at, status, error)
        except StepflowError as e:
            return await self._step_failed(run, step, started_at, StepStatus.ERROR, e)
        except Exception as e:
            # Anything a connector lets escape is still a connector failure
            logger.exception(f"[{run.run_id}] {node.id}: unexpected connector exception")
            error = ConnectorError(f"{type(e).__name__}: {e}", {"step_id": node.id})
            return await self._step_failed(run, step, started_at, StepStatus.ERROR, error)

        run.outputs.put(node.id, output)
        result = StepResult(
            step_id=node.id,
            status=StepStatus.SUCCESS,
            output=output,
            started_at=started_at,
            ended_at=datetime.now(),
        )
        logger.info(f"[{run.run_id}] {node.id}: Step completed in {result.duration_ms:.0f}ms")
        await self._emit(run, EventType.STEP_COMPLETE, {
            "step_id": node.id,
            "step_name": node.display_name,
            "output": snapshot,
            "duration_ms": result.duration_ms,
        })
        return result, None

    async def _step_failed(
        self,
        run: _RunState,
        step: CompiledStep,
        started_at: datetime,
        status: StepStatus,
        error: StepflowError,
    ) -> Tuple[StepResult, StepflowError]:
        result = StepResult(
            step_id=step.step_id,
            status=status,
            error=error.message,
            error_code=error.code,
            started_at=started_at,
            ended_at=datetime.now(),
        )
        log = logger.info if status == StepStatus.CANCELLED else logger.error
        log(f"[{run.run_id}] {step.step_id}: Step {status.value}: {error.message}")
        await self._emit(run, EventType.STEP_ERROR, {
            "step_id": step.step_id,
            "step_name": step.node.display_name,
            "status": status.value,
            "error": error.message,
            "code": error.code,
            "duration_ms": result.duration_ms,
        })
        return result, error

    async def _finish(
        self,
        run: _RunState,
        state: PipelineState,
        error: Optional[StepflowError] = None,
    ) -> ExecutionResult:
        run.state = state
        ordered = sorted(
            run.results.values(),
            key=lambda r: run.pipeline.get_step(r.step_id).index,
        )

        output = None
        message = None
        if state == PipelineState.COMPLETED:
            output = run.pipeline.build_output(run.outputs, run.inputs)
        elif error is not None:
            failed = next((r for r in ordered if r.status == StepStatus.ERROR), None)
            step = run.pipeline.get_step(failed.step_id) if failed else None
            message = f'Step "{step.node.display_name}" failed: {error.message}' if step else error.message

        result = ExecutionResult(
            success=state == PipelineState.COMPLETED,
            state=state,
            output=output,
            error=message,
            error_code=error.code if error else None,
            step_results=ordered,
        )
        logger.info(f"[{run.run_id}] Workflow {run.pipeline.workflow_id} finished: {state.value}")
        try:
            summary = result.model_dump(mode="json")
        except ValueError:
            # outputs that are not JSON-serialisable are still reported as python values
            summary = result.model_dump()
        await self._emit(run, EventType.DONE, summary)
        return result

    async def _emit(self, run: _RunState, event_type: EventType, data: Dict[str, Any]) -> None:
        """Forward an event to the callback. A failing callback never fails the run."""
        if run.on_event is None:
            return
        event = ExecutionEvent(event=event_type, data={"run_id": run.run_id, **data})
        try:
            maybe = run.on_event(event)
            if asyncio.iscoroutine(maybe):
                await maybe
        except Exception as e:
            logger.warning(f"[{run.run_id}] Event callback failed for {event_type.value}: {e}")

    @staticmethod
    def _effective_inputs(pipeline: CompiledPipeline, context: RuntimeContext) -> Dict[str, Any]:
        """Global inputs with schema defaults applied; the context itself is left as is."""
        inputs = pipeline.input_defaults()
        inputs.update(deepcopy(dict(context.inputs)))

        missing = [name for name in pipeline.input_schema.get("required") or [] if name not in inputs]
        if missing:
            raise InvalidInputsError(
                f"Missing required inputs: {', '.join(missing)}",
                {"missing": missing},
            )
        return inputs
