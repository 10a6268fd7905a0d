from typing import Any, Callable, Dict, Iterable, List, Optional
import json
import logging
from pathlib import Path

from pydantic import BaseModel

from stepflow.engine.errors import UnknownConnectorError
from stepflow.engine.models import StepType, WorkflowDefinition

from .base import Connector
from .control_flow import ControlFlowConnector
from .custom_code import CustomCodeConnector
from .remote_tool import ActionClient, RemoteToolConnector
from .table import InMemoryTableStore, TableQueryConnector, TableStore, TableWriteConnector

logger = logging.getLogger(__name__)


class ActionSpec(BaseModel):
    """Catalog entry describing one remote action"""
    toolkit_slug: str
    action_id: str
    name: str = ""
    description: str = ""
    input_schema: Dict[str, Any] = {}
    output_schema: Dict[str, Any] = {}


class ToolCatalog:
    """Read-only catalog of known remote actions and their schemas."""

    def __init__(self, specs: Iterable[ActionSpec] = ()):
        self._specs: Dict[tuple, ActionSpec] = {(s.toolkit_slug, s.action_id): s for s in specs}

    @classmethod
    def from_file(cls, path: str) -> "ToolCatalog":
        """Load a catalog from a JSON list of action specs."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls(ActionSpec(**item) for item in data)

    def get(self, toolkit_slug: Optional[str], action_id: Optional[str]) -> Optional[ActionSpec]:
        return self._specs.get((toolkit_slug, action_id))

    def list_actions(self, toolkit_slug: Optional[str] = None) -> List[ActionSpec]:
        specs = sorted(self._specs.values(), key=lambda s: (s.toolkit_slug, s.action_id))
        if toolkit_slug:
            specs = [s for s in specs if s.toolkit_slug == toolkit_slug]
        return specs

    def hydrate(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """
        Fill empty remote_tool node schemas from the catalog.

        Returns a new definition; the one passed in is left untouched.
        """
        nodes = []
        changed = False
        for node in definition.nodes:
            spec = self.get(node.toolkit_slug, node.action_id) if node.type == StepType.REMOTE_TOOL else None
            if spec and (not node.input_schema or not node.output_schema):
                node = node.model_copy(update={
                    "input_schema": node.input_schema or spec.input_schema,
                    "output_schema": node.output_schema or spec.output_schema,
                })
                changed = True
            nodes.append(node)
        return definition.model_copy(update={"nodes": nodes}) if changed else definition

    def __len__(self) -> int:
        return len(self._specs)


class ConnectorRegistry:
    """Registry resolving a step type (and optionally a toolkit) to its connector"""

    def __init__(self, catalog: Optional[ToolCatalog] = None):
        self.catalog = catalog or ToolCatalog()
        self.connectors: Dict[StepType, Connector] = {}
        self.toolkit_connectors: Dict[str, Connector] = {}

    def register(self, connector: Connector, toolkit_slug: Optional[str] = None) -> None:
        """Register a connector for its step type, or as an override for one toolkit."""
        if toolkit_slug:
            self.toolkit_connectors[toolkit_slug] = connector
        else:
            self.connectors[connector.step_type] = connector

    def resolve(self, step_type: StepType, toolkit_slug: Optional[str] = None) -> Connector:
        if toolkit_slug and toolkit_slug in self.toolkit_connectors:
            return self.toolkit_connectors[toolkit_slug]
        if step_type not in self.connectors:
            raise UnknownConnectorError(f"No connector registered for step type '{step_type.value}'")
        return self.connectors[step_type]

    def list_connectors(self) -> Dict[str, str]:
        listing = {t.value: type(c).__name__ for t, c in self.connectors.items()}
        listing.update({f"toolkit:{slug}": type(c).__name__ for slug, c in self.toolkit_connectors.items()})
        return listing

    @classmethod
    def create_default(
        cls,
        action_client: ActionClient,
        table_store: Optional[TableStore] = None,
        functions: Optional[Dict[str, Callable]] = None,
        catalog: Optional[ToolCatalog] = None,
    ) -> "ConnectorRegistry":
        """Registry with one connector per step type."""
        store = table_store if table_store is not None else InMemoryTableStore()
        registry = cls(catalog)
        registry.register(RemoteToolConnector(action_client))
        registry.register(CustomCodeConnector(functions))
        registry.register(TableQueryConnector(store))
        registry.register(TableWriteConnector(store))
        registry.register(ControlFlowConnector())
        return registry
