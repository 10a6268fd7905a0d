from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
import uuid
from datetime import datetime


# Pseudo step ids usable in edges
INPUT_SOURCE = "__input__"  # source: read from the global inputs
STATIC_SOURCE = "__static__"  # source: literal edge value
OUTPUT_TARGET = "__output__"  # target: contributes to the pipeline output

PSEUDO_SOURCES = (INPUT_SOURCE, STATIC_SOURCE)


class StepType(str, Enum):
    REMOTE_TOOL = "remote_tool"
    CUSTOM_CODE = "custom_code"
    TABLE_QUERY = "table_query"
    TABLE_WRITE = "table_write"
    CONTROL_FLOW = "control_flow"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)


class EventType(str, Enum):
    STEP_START = "step_start"
    STEP_COMPLETE = "step_complete"
    STEP_ERROR = "step_error"
    DONE = "done"


class StepNode(BaseModel):
    """One unit of work in a workflow"""
    id: str
    type: StepType
    name: str = ""
    description: Optional[str] = None
    toolkit_slug: Optional[str] = None  # remote_tool: which connected account to use
    action_id: Optional[str] = None  # remote_tool: e.g. "FIRECRAWL_SCRAPE"
    table_ref: Optional[str] = None  # table_*: logical table name
    code: Optional[str] = None  # custom_code: python source defining run(input)
    input_schema: Dict[str, Any] = {}
    output_schema: Dict[str, Any] = {}
    config: Dict[str, Any] = {}

    @property
    def display_name(self) -> str:
        return self.name or self.id


class DataEdge(BaseModel):
    """Maps one output field of a step onto one input field of another"""
    source_step_id: str
    source_field_path: str = ""
    target_step_id: str
    target_field_path: str
    transform: Optional[str] = None
    value: Any = None  # only read when source_step_id is __static__


class WorkflowDefinition(BaseModel):
    """Complete workflow graph definition"""
    id: str
    name: str
    description: str = ""
    nodes: List[StepNode] = []
    edges: List[DataEdge] = []
    input_schema: Dict[str, Any] = {}
    version: int = 1
    last_modified: Optional[datetime] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "step_count": len(self.nodes),
            "edge_count": len(self.edges),
            "toolkits": sorted({n.toolkit_slug for n in self.nodes if n.toolkit_slug}),
            "version": self.version,
            "last_modified": self.last_modified.isoformat() if self.last_modified else None,
        }


class RuntimeContext(BaseModel):
    """Per-execution bindings; read-only for the engine"""
    model_config = ConfigDict(frozen=True)

    resource_id: Optional[str] = None
    connection_bindings: Dict[str, str] = {}
    table_bindings: Dict[str, str] = {}
    inputs: Dict[str, Any] = {}


class InvocationRequest(BaseModel):
    """Input to one execution of a stored workflow"""
    workflow_id: str
    inputs: Dict[str, Any] = {}
    connection_bindings: Dict[str, str] = {}
    table_bindings: Dict[str, str] = {}
    resource_id: Optional[str] = None

    def to_context(self) -> RuntimeContext:
        return RuntimeContext(
            resource_id=self.resource_id,
            connection_bindings=self.connection_bindings,
            table_bindings=self.table_bindings,
            inputs=self.inputs,
        )


class StepResult(BaseModel):
    """Outcome of a single step"""
    step_id: str
    status: StepStatus
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    started_at: datetime
    ended_at: datetime

    @property
    def duration_ms(self) -> float:
        return (self.ended_at - self.started_at).total_seconds() * 1000


class ExecutionResult(BaseModel):
    """Outcome of one pipeline execution"""
    success: bool
    state: PipelineState
    output: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    step_results: List[StepResult] = []

    def get_step(self, step_id: str) -> Optional[StepResult]:
        return next((r for r in self.step_results if r.step_id == step_id), None)


class ExecutionEvent(BaseModel):
    """Lifecycle event forwarded to streaming consumers"""
    event: EventType
    data: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_message(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class ExecutionRun(BaseModel):
    """Runtime record of a workflow execution"""
    run_id: str
    workflow_id: str
    state: PipelineState
    current_steps: List[str] = []
    result: Optional[ExecutionResult] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def create(cls, workflow_id: str) -> "ExecutionRun":
        return cls(
            run_id=str(uuid.uuid4()),
            workflow_id=workflow_id,
            state=PipelineState.PENDING,
            created_at=datetime.now()
        )
