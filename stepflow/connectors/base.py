from abc import ABC, abstractmethod
from typing import Any

from stepflow.engine.models import RuntimeContext, StepNode, StepType


class Connector(ABC):
    """
    Execution strategy for one step type.

    ``execute`` returns the step output or raises a ConnectorError. A connector
    performs exactly the one action its step represents: no hidden retries.
    Connectors marked ``cancellable`` may be interrupted mid-call when a run is
    cancelled; the others are always allowed to finish.
    """

    step_type: StepType
    cancellable: bool = False

    @abstractmethod
    async def execute(self, node: StepNode, input: Any, context: RuntimeContext) -> Any:
        ...
