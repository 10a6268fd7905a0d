"""
Connectors

One execution strategy per step type, plus the registry that resolves them.
"""

from .base import Connector
from .control_flow import ControlFlowConnector
from .custom_code import CustomCodeConnector
from .registry import ActionSpec, ConnectorRegistry, ToolCatalog
from .remote_tool import ActionClient, ActionResult, HttpActionClient, RemoteToolConnector
from .table import InMemoryTableStore, TableQueryConnector, TableStore, TableWriteConnector

__all__ = [
    "Connector",
    "ConnectorRegistry",
    "ToolCatalog",
    "ActionSpec",
    "ActionClient",
    "ActionResult",
    "HttpActionClient",
    "RemoteToolConnector",
    "CustomCodeConnector",
    "TableQueryConnector",
    "TableWriteConnector",
    "TableStore",
    "InMemoryTableStore",
    "ControlFlowConnector"
]
