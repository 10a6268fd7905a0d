from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging
import traceback

from stepflow.engine.errors import CustomCodeError
from stepflow.engine.models import RuntimeContext, StepNode, StepType

from .base import Connector

logger = logging.getLogger(__name__)


class CustomCodeConnector(Connector):
    """
    Runs caller-supplied logic against the resolved input.

    A step either carries python source in ``code`` defining ``run(input)``
    (sync or async), or names a function registered on this connector through
    ``action_id``. Whatever the logic raises surfaces as CustomCodeError with
    the formatted stack.
    """

    step_type = StepType.CUSTOM_CODE

    def __init__(self, functions: Optional[Dict[str, Callable]] = None):
        self.functions: Dict[str, Callable] = dict(functions or {})

    def register(self, name: str, func: Callable) -> None:
        """Register a named function steps can refer to by action_id."""
        self.functions[name] = func

    def list_functions(self) -> List[str]:
        return list(self.functions.keys())

    async def execute(self, node: StepNode, input: Any, context: RuntimeContext) -> Any:
        func = self._load(node)
        try:
            # Execute function - handle both synchronous and asynchronous functions.
            # Sync functions run in a worker thread so timeouts still fire.
            if asyncio.iscoroutinefunction(func):
                return await func(input)
            return await asyncio.to_thread(func, input)
        except Exception as e:
            raise CustomCodeError(f"{type(e).__name__}: {e}", traceback.format_exc())

    def _load(self, node: StepNode) -> Callable:
        if node.code:
            namespace: Dict[str, Any] = {}
            try:
                exec(compile(node.code, f"<step {node.id}>", "exec"), namespace)
            except Exception as e:
                raise CustomCodeError(f"Step '{node.id}' code failed to load: {e}", traceback.format_exc())
            func = namespace.get("run")
            if not callable(func):
                raise CustomCodeError(f"Step '{node.id}' code must define run(input)")
            return func

        if node.action_id and node.action_id in self.functions:
            return self.functions[node.action_id]

        raise CustomCodeError(f"Step '{node.id}' has no code and no registered function")
