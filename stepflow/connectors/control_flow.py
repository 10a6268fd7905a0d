from typing import Any, Dict, List, Literal, Optional
import logging

from pydantic import BaseModel, ValidationError

from stepflow.engine.errors import ConnectorError
from stepflow.engine.models import RuntimeContext, StepNode, StepType
from stepflow.engine.paths import MISSING, get_value

from .base import Connector

logger = logging.getLogger(__name__)


class BranchRule(BaseModel):
    condition: str  # e.g. "priority == 'high'"
    route: str


class ControlFlowConfig(BaseModel):
    kind: Literal["branch", "merge", "loop", "passthrough"] = "passthrough"
    branches: List[BranchRule] = []
    default_route: Optional[str] = None
    merge_strategy: Literal["all", "first"] = "all"
    iterable_field: Optional[str] = None
    item_path: Optional[str] = None
    condition: Optional[str] = None  # loop: keep only items where this holds


def evaluate_condition(condition: str, values: Dict[str, Any]) -> bool:
    """
    Evaluate a condition string like "score >= 7" against already-resolved values.

    Uses a restricted eval() with no builtins beyond a few converters. A condition
    that fails to evaluate counts as false.
    """
    safe_builtins = {
        '__builtins__': {},
        'True': True, 'False': False, 'None': None,
        'int': int, 'float': float, 'str': str, 'len': len
    }
    try:
        return bool(eval(condition, safe_builtins, dict(values)))
    except Exception as e:
        logger.warning(f"Failed to evaluate condition '{condition}': {e}")
        return False


def _scope(value: Any) -> Dict[str, Any]:
    scope = dict(value) if isinstance(value, dict) else {}
    scope["input"] = value
    return scope


class ControlFlowConnector(Connector):
    """
    In-process branch / merge / loop / passthrough primitives.

    Works only on values already resolved by the input mapper: no external I/O.
    """

    step_type = StepType.CONTROL_FLOW

    async def execute(self, node: StepNode, input: Any, context: RuntimeContext) -> Any:
        try:
            config = ControlFlowConfig(**node.config)
        except ValidationError as e:
            raise ConnectorError(f"Invalid control flow config for step '{node.id}': {e}", {"step_id": node.id})

        if config.kind == "branch":
            return self._branch(config, input)
        if config.kind == "merge":
            return self._merge(config, input)
        if config.kind == "loop":
            return self._loop(config, input)
        return input

    def _branch(self, config: ControlFlowConfig, input: Any) -> Dict[str, Any]:
        scope = _scope(input)
        # First matching condition wins
        for rule in config.branches:
            if evaluate_condition(rule.condition, scope):
                return {"route": rule.route, "value": input}
        return {"route": config.default_route, "value": input}

    def _merge(self, config: ControlFlowConfig, input: Any) -> Dict[str, Any]:
        if not isinstance(input, dict):
            return {"value": input}
        if config.merge_strategy == "first":
            first = next((v for v in input.values() if v is not None), None)
            return {"value": first}

        merged: Dict[str, Any] = {}
        for key, value in input.items():
            if isinstance(value, dict):
                merged.update(value)
            else:
                merged[key] = value
        return merged

    def _loop(self, config: ControlFlowConfig, input: Any) -> Dict[str, Any]:
        items = get_value(input, config.iterable_field or "", default=None)
        if items is None:
            items = []
        elif not isinstance(items, list):
            items = [items]

        results = []
        for item in items:
            if config.condition and not evaluate_condition(config.condition, {**_scope(item), "item": item}):
                continue
            if config.item_path:
                value = get_value(item, config.item_path)
                if value is MISSING:
                    continue
                results.append(value)
            else:
                results.append(item)
        return {"items": results, "count": len(results)}
