"""
Core workflow engine components

Graph validation, compilation, execution and code generation, plus the data
models and errors they share.
"""

from .codegen import generate
from .compiler import CompiledPipeline, CompiledStep, InputMapper, compile_definition, compile_pipeline
from .engine import WorkflowEngine, check_prerequisites
from .executor import CancellationToken, PipelineExecutor
from .models import (
    DataEdge,
    ExecutionEvent,
    ExecutionResult,
    ExecutionRun,
    InvocationRequest,
    PipelineState,
    RuntimeContext,
    StepNode,
    StepResult,
    StepStatus,
    StepType,
    WorkflowDefinition
)
from .validator import ValidatedGraph, validate

__all__ = [
    "WorkflowEngine",
    "check_prerequisites",
    "PipelineExecutor",
    "CancellationToken",
    "validate",
    "ValidatedGraph",
    "compile_pipeline",
    "compile_definition",
    "CompiledPipeline",
    "CompiledStep",
    "InputMapper",
    "generate",
    "WorkflowDefinition",
    "StepNode",
    "DataEdge",
    "StepType",
    "StepStatus",
    "PipelineState",
    "RuntimeContext",
    "InvocationRequest",
    "StepResult",
    "ExecutionResult",
    "ExecutionEvent",
    "ExecutionRun"
]
