from typing import Any, Dict, List, Optional


class StepflowError(Exception):
    """Base class for every error raised by the engine."""

    code = "stepflow_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, "details": self.details}


class WorkflowNotFoundError(StepflowError):
    code = "workflow_not_found"

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow '{workflow_id}' not found", {"workflow_id": workflow_id})
        self.workflow_id = workflow_id


class DefinitionStoreError(StepflowError):
    code = "definition_store_error"


# Graph errors - raised by validation, before anything runs

class GraphError(StepflowError):
    code = "graph_error"


class DuplicateNodeError(GraphError):
    code = "duplicate_node_id"


class UnknownNodeReferenceError(GraphError):
    code = "unknown_node_reference"


class AmbiguousMappingError(GraphError):
    code = "ambiguous_mapping"


class InvalidFieldPathError(GraphError):
    code = "invalid_field_path"


class CyclicGraphError(GraphError):
    code = "cyclic_graph"

    def __init__(self, cycle: List[str]):
        super().__init__(
            f"Workflow graph contains a cycle: {' -> '.join(cycle)}",
            {"cycle": cycle},
        )
        self.cycle = cycle


# Compile errors - raised while resolving mappings

class CompileError(StepflowError):
    code = "compile_error"


class MissingRequiredInputError(CompileError):
    code = "missing_required_input"


class SchemaMismatchError(CompileError):
    code = "schema_mismatch"


# Connector errors - raised while a single step executes

class ConnectorError(StepflowError):
    code = "connector_error"


class MissingConnectionError(ConnectorError):
    code = "missing_connection"

    def __init__(self, toolkit_slug: Optional[str]):
        super().__init__(
            f"No connection bound for toolkit: {toolkit_slug}",
            {"toolkit_slug": toolkit_slug},
        )
        self.toolkit_slug = toolkit_slug


class RemoteActionError(ConnectorError):
    code = "remote_action_error"


class CustomCodeError(ConnectorError):
    code = "custom_code_error"

    def __init__(self, message: str, stack: str = ""):
        super().__init__(message, {"stack": stack})
        self.stack = stack


class TableError(ConnectorError):
    code = "table_error"


class UnknownConnectorError(ConnectorError):
    code = "unknown_connector"


# Executor errors

class InputMappingError(StepflowError):
    code = "input_mapping_error"


class InvalidInputsError(StepflowError):
    code = "invalid_inputs"


class ExecutionTimeoutError(StepflowError):
    code = "timeout"


class StepTimeoutError(ExecutionTimeoutError):
    code = "step_timeout"


class PipelineTimeoutError(ExecutionTimeoutError):
    code = "pipeline_timeout"


class CancellationError(StepflowError):
    code = "cancelled"
