"""Builders and fakes shared by the test modules."""
import asyncio
from typing import Any, Callable, Dict, List, Optional

from stepflow.connectors import ActionResult, ConnectorRegistry, InMemoryTableStore, ToolCatalog
from stepflow.engine.models import DataEdge, StepNode, StepType, WorkflowDefinition


class FakeActionClient:
    """ActionClient double recording every call.

    ``responses`` maps an action id to the data returned, an ActionResult, or a
    callable receiving the arguments.
    """

    def __init__(self, responses: Optional[Dict[str, Any]] = None, delay: float = 0.0):
        self.responses = responses or {}
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def execute_action(self, action_id, arguments, connected_account_id, entity_id=None):
        self.calls.append({
            "action_id": action_id,
            "arguments": arguments,
            "connected_account_id": connected_account_id,
            "entity_id": entity_id,
        })
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.responses.get(action_id, {})
        if callable(response):
            response = response(arguments)
        if isinstance(response, ActionResult):
            return response
        return ActionResult(successful=True, data=response)

    def called(self, action_id: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["action_id"] == action_id]


def tool(node_id: str, toolkit: str = "demo", action: Optional[str] = None, **kwargs) -> StepNode:
    return StepNode(
        id=node_id,
        type=StepType.REMOTE_TOOL,
        toolkit_slug=toolkit,
        action_id=action or node_id.upper(),
        **kwargs,
    )


def code(node_id: str, source: Optional[str] = None, function: Optional[str] = None, **kwargs) -> StepNode:
    return StepNode(id=node_id, type=StepType.CUSTOM_CODE, code=source, action_id=function, **kwargs)


def edge(source: str, target: str, source_path: str = "", target_path: str = "value", **kwargs) -> DataEdge:
    return DataEdge(
        source_step_id=source,
        source_field_path=source_path,
        target_step_id=target,
        target_field_path=target_path,
        **kwargs,
    )


def definition(nodes: List[StepNode], edges: Optional[List[DataEdge]] = None, **kwargs) -> WorkflowDefinition:
    kwargs.setdefault("id", "wf")
    kwargs.setdefault("name", "Test workflow")
    return WorkflowDefinition(nodes=nodes, edges=edges or [], **kwargs)


def object_schema(*names: str, required: Optional[List[str]] = None) -> Dict[str, Any]:
    schema: Dict[str, Any] = {"type": "object", "properties": {n: {} for n in names}}
    if required:
        schema["required"] = required
    return schema


def build_registry(
    client: Optional[FakeActionClient] = None,
    functions: Optional[Dict[str, Callable]] = None,
    table_store: Optional[InMemoryTableStore] = None,
    catalog: Optional[ToolCatalog] = None,
) -> ConnectorRegistry:
    return ConnectorRegistry.create_default(
        client or FakeActionClient(),
        table_store=table_store,
        functions=functions,
        catalog=catalog,
    )
