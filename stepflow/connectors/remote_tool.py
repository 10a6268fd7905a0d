from typing import Any, Dict, Optional, Protocol
import logging

import httpx
from pydantic import BaseModel

from stepflow.config import Settings
from stepflow.engine.errors import MissingConnectionError, RemoteActionError
from stepflow.engine.models import RuntimeContext, StepNode, StepType

from .base import Connector

logger = logging.getLogger(__name__)


class ActionResult(BaseModel):
    """Response of one remote action call"""
    successful: bool
    data: Any = None
    error: Optional[str] = None


class ActionClient(Protocol):
    """Client for the external action service."""

    async def execute_action(
        self,
        action_id: str,
        arguments: Dict[str, Any],
        connected_account_id: str,
        entity_id: Optional[str] = None,
    ) -> ActionResult:
        ...


class HttpActionClient:
    """ActionClient talking to the action service over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpActionClient":
        api_key = settings.action_api_key.get_secret_value() if settings.action_api_key else None
        return cls(settings.action_api_url, api_key=api_key, timeout=settings.action_timeout_s)

    async def execute_action(
        self,
        action_id: str,
        arguments: Dict[str, Any],
        connected_account_id: str,
        entity_id: Optional[str] = None,
    ) -> ActionResult:
        url = f"{self.base_url}/tools/execute/{action_id}"
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        payload = {
            "arguments": arguments,
            "connected_account_id": connected_account_id,
            "user_id": entity_id,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, headers=headers, json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            detail = e.response.text if e.response is not None else str(e)
            raise RemoteActionError(
                f"Action {action_id} failed with HTTP {e.response.status_code}: {detail}",
                {"action_id": action_id, "status_code": e.response.status_code},
            )
        except httpx.HTTPError as e:
            raise RemoteActionError(f"Action {action_id} request failed: {e}", {"action_id": action_id})
        except ValueError as e:
            raise RemoteActionError(f"Action {action_id} returned invalid JSON: {e}", {"action_id": action_id})

        if not isinstance(data, dict):
            raise RemoteActionError(f"Action {action_id} returned an unexpected payload", {"action_id": action_id})
        return ActionResult(
            successful=bool(data.get("successful", False)),
            data=data.get("data"),
            error=data.get("error"),
        )


class RemoteToolConnector(Connector):
    """Invokes a named external action against the user's connected account."""

    step_type = StepType.REMOTE_TOOL
    cancellable = True

    def __init__(self, client: ActionClient):
        self.client = client

    async def execute(self, node: StepNode, input: Any, context: RuntimeContext) -> Any:
        connection_id = context.connection_bindings.get(node.toolkit_slug) if node.toolkit_slug else None
        if not connection_id:
            raise MissingConnectionError(node.toolkit_slug)
        if not node.action_id:
            raise RemoteActionError(f"Step '{node.id}' has no action id", {"step_id": node.id})

        logger.debug(f"Calling {node.action_id} via {node.toolkit_slug} for step {node.id}")
        result = await self.client.execute_action(
            node.action_id,
            arguments=input if isinstance(input, dict) else {"input": input},
            connected_account_id=connection_id,
            entity_id=context.resource_id,
        )

        if not result.successful:
            raise RemoteActionError(
                result.error or "Tool execution failed",
                {"action_id": node.action_id, "toolkit_slug": node.toolkit_slug},
            )
        return result.data
