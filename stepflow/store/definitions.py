from typing import Any, Dict, List, Optional, Protocol
from datetime import datetime
from pathlib import Path
import json
import logging
import re

from pydantic import ValidationError

from stepflow.config import Settings
from stepflow.engine.errors import DefinitionStoreError, WorkflowNotFoundError
from stepflow.engine.models import WorkflowDefinition

logger = logging.getLogger(__name__)

DEFINITION_FILENAME = "workflow.json"
GENERATED_FILENAME = "workflow.py"

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class DefinitionStore(Protocol):
    """Where workflow definitions live between executions."""

    def load(self, workflow_id: str) -> WorkflowDefinition:
        ...

    def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        ...

    def list(self) -> List[Dict[str, Any]]:
        ...

    def delete(self, workflow_id: str) -> None:
        ...

    def save_generated(self, workflow_id: str, code: str) -> str:
        ...


def _stamp(definition: WorkflowDefinition, previous: Optional[WorkflowDefinition]) -> WorkflowDefinition:
    version = previous.version + 1 if previous else definition.version
    return definition.model_copy(update={"version": version, "last_modified": datetime.now()})


class InMemoryDefinitionStore:
    """Definitions kept in a dictionary for the life of the process."""

    def __init__(self):
        self.definitions: Dict[str, WorkflowDefinition] = {}
        self.generated: Dict[str, str] = {}

    def load(self, workflow_id: str) -> WorkflowDefinition:
        definition = self.definitions.get(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(workflow_id)
        return definition

    def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        stored = _stamp(definition, self.definitions.get(definition.id))
        self.definitions[definition.id] = stored
        return stored

    def list(self) -> List[Dict[str, Any]]:
        return [self.definitions[k].summary() for k in sorted(self.definitions)]

    def delete(self, workflow_id: str) -> None:
        if self.definitions.pop(workflow_id, None) is None:
            raise WorkflowNotFoundError(workflow_id)
        self.generated.pop(workflow_id, None)

    def save_generated(self, workflow_id: str, code: str) -> str:
        self.generated[workflow_id] = code
        return f"memory://{workflow_id}/{GENERATED_FILENAME}"


class JsonFileDefinitionStore:
    """
    One directory per workflow under ``root``::

        <root>/<workflow_id>/workflow.json   definition
        <root>/<workflow_id>/workflow.py     last generated code
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def _dir(self, workflow_id: str) -> Path:
        if not _SAFE_ID.match(workflow_id):
            raise DefinitionStoreError(f"Invalid workflow id: {workflow_id!r}", {"workflow_id": workflow_id})
        return self.root / workflow_id

    def load(self, workflow_id: str) -> WorkflowDefinition:
        path = self._dir(workflow_id) / DEFINITION_FILENAME
        if not path.exists():
            raise WorkflowNotFoundError(workflow_id)
        try:
            return WorkflowDefinition(**json.loads(path.read_text(encoding="utf-8")))
        except (ValueError, ValidationError) as e:
            logger.error(f"Workflow file {path} is invalid: {e}")
            raise DefinitionStoreError(f"Workflow '{workflow_id}' is invalid: {e}", {"workflow_id": workflow_id})

    def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        directory = self._dir(definition.id)
        previous = None
        if (directory / DEFINITION_FILENAME).exists():
            previous = self.load(definition.id)
        stored = _stamp(definition, previous)

        directory.mkdir(parents=True, exist_ok=True)
        (directory / DEFINITION_FILENAME).write_text(stored.model_dump_json(indent=2), encoding="utf-8")
        logger.info(f"Saved workflow {stored.id} v{stored.version}")
        return stored

    def list(self) -> List[Dict[str, Any]]:
        if not self.root.exists():
            return []
        summaries = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or entry.name.startswith(".") or not (entry / DEFINITION_FILENAME).exists():
                continue
            try:
                summaries.append(self.load(entry.name).summary())
            except DefinitionStoreError as e:
                logger.warning(f"Skipping {entry.name} in listing: {e.message}")
        return summaries

    def delete(self, workflow_id: str) -> None:
        directory = self._dir(workflow_id)
        if not (directory / DEFINITION_FILENAME).exists():
            raise WorkflowNotFoundError(workflow_id)
        for name in (DEFINITION_FILENAME, GENERATED_FILENAME):
            (directory / name).unlink(missing_ok=True)
        if not any(directory.iterdir()):
            directory.rmdir()

    def save_generated(self, workflow_id: str, code: str) -> str:
        directory = self._dir(workflow_id)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / GENERATED_FILENAME
        path.write_text(code, encoding="utf-8")
        return str(path)


def create_store(settings: Settings) -> DefinitionStore:
    """Build the store selected by settings.store_backend."""
    if settings.store_backend == "file":
        return JsonFileDefinitionStore(settings.store_path)
    if settings.store_backend == "memory":
        return InMemoryDefinitionStore()
    raise ValueError(f"Unknown store backend: {settings.store_backend}")
