"""
Compiler / linearizer.

Turns a ValidatedGraph into a CompiledPipeline: a topological order over the
steps plus, for every step, an InputMapper that builds the step's input from
the outputs of earlier steps and the global inputs. Compilation is pure; it
never performs I/O or touches a connector.
"""

from copy import deepcopy
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
import heapq
import logging

from .errors import InputMappingError, MissingRequiredInputError, SchemaMismatchError
from .models import (
    DataEdge, INPUT_SOURCE, STATIC_SOURCE, StepNode, WorkflowDefinition,
)
from .paths import MISSING, get_value, head, schema_has_path, set_value
from .transforms import TRANSFORMS
from .validator import ValidatedGraph, validate

logger = logging.getLogger(__name__)


class SourceKind:
    STEP = "step"
    INPUT = "input"
    STATIC = "static"


@dataclass(frozen=True)
class Binding:
    """One resolved mapping: where a value comes from and where it lands."""
    target_path: str
    kind: str
    source_path: str = ""
    source_step_id: Optional[str] = None
    source_index: Optional[int] = None  # compiled position of the source step
    transform: Optional[str] = None
    value: Any = None
    implicit: bool = False  # bound to a global input by name, no edge

    def resolve(self, outputs: Mapping[str, Any], inputs: Mapping[str, Any]) -> Any:
        if self.kind == SourceKind.STATIC:
            return self.value
        if self.kind == SourceKind.INPUT:
            return get_value(inputs, self.source_path)
        if self.source_step_id not in outputs:
            return MISSING
        return get_value(outputs[self.source_step_id], self.source_path)


@dataclass(frozen=True)
class InputMapper:
    """Builds a step input (or the pipeline output) from prior results."""
    bindings: Tuple[Binding, ...] = ()
    defaults: Tuple[Tuple[str, Any], ...] = ()

    def build(self, outputs: Mapping[str, Any], inputs: Mapping[str, Any]) -> Any:
        """
        Assemble the input object.

        Every value is deep-copied so a step can never alias (and mutate)
        another step's stored output. Bindings whose source value is absent are
        skipped; schema defaults fill fields nothing else provided.
        """
        result: Any = {}
        for name, default in self.defaults:
            result[name] = deepcopy(default)

        for binding in self.bindings:
            value = binding.resolve(outputs, inputs)
            if value is MISSING:
                continue
            value = deepcopy(value)
            if binding.transform:
                try:
                    value = TRANSFORMS[binding.transform](value)
                except (TypeError, ValueError) as e:
                    raise InputMappingError(
                        f"Transform '{binding.transform}' failed for {binding.target_path or 'output'}: {e}",
                        {"target_path": binding.target_path, "transform": binding.transform},
                    )
            if not binding.target_path:
                result = value
            else:
                if not isinstance(result, dict):
                    result = {}
                set_value(result, binding.target_path, value)
        return result

    @property
    def source_step_ids(self) -> Tuple[str, ...]:
        seen: List[str] = []
        for b in self.bindings:
            if b.kind == SourceKind.STEP and b.source_step_id not in seen:
                seen.append(b.source_step_id)
        return tuple(seen)


@dataclass(frozen=True)
class CompiledStep:
    index: int
    node: StepNode
    input_mapper: InputMapper
    output_schema: Dict[str, Any]
    depends_on: Tuple[str, ...]

    @property
    def step_id(self) -> str:
        return self.node.id


@dataclass(frozen=True)
class CompiledPipeline:
    """Ordered, mapping-resolved, execution-ready form of a workflow."""
    workflow_id: str
    workflow_name: str
    steps: Tuple[CompiledStep, ...]
    input_schema: Dict[str, Any]
    output_mapper: Optional[InputMapper] = None

    def __iter__(self) -> Iterator[CompiledStep]:
        return iter(self.steps)

    def __len__(self) -> int:
        return len(self.steps)

    @property
    def step_ids(self) -> List[str]:
        return [s.step_id for s in self.steps]

    def get_step(self, step_id: str) -> Optional[CompiledStep]:
        return next((s for s in self.steps if s.step_id == step_id), None)

    def input_defaults(self) -> Dict[str, Any]:
        """Defaults declared on the global input schema, by input name (fresh copies)."""
        properties = self.input_schema.get("properties") or {}
        return {
            name: deepcopy(prop["default"])
            for name, prop in properties.items()
            if isinstance(prop, dict) and "default" in prop
        }

    def build_output(self, outputs: Mapping[str, Any], inputs: Mapping[str, Any]) -> Any:
        """Final pipeline output: the __output__ mappings, else the last step's output."""
        if self.output_mapper is not None:
            return self.output_mapper.build(outputs, inputs)
        if not self.steps:
            return None
        return deepcopy(outputs.get(self.steps[-1].step_id))


def linearize(graph: ValidatedGraph) -> List[str]:
    """
    Kahn's algorithm over the edge-induced dependency graph.

    Ready nodes are taken in declaration order, so the result is reproducible
    for any given definition.
    """
    in_degree = {node_id: len(graph.upstream[node_id]) for node_id in graph.node_ids}
    position = {node_id: i for i, node_id in enumerate(graph.node_ids)}

    ready = [(position[n], n) for n, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    order: List[str] = []
    while ready:
        _, node_id = heapq.heappop(ready)
        order.append(node_id)
        for child in graph.downstream[node_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, (position[child], child))

    # validate() already rejected cycles
    assert len(order) == len(graph.node_ids), "dependency graph is not acyclic"
    return order


def compile_pipeline(
    graph: ValidatedGraph,
    global_input_schema: Optional[Dict[str, Any]] = None,
) -> CompiledPipeline:
    """
    Compile a validated graph into a CompiledPipeline.

    ``global_input_schema`` defaults to the definition's own ``input_schema``.
    Raises MissingRequiredInputError or SchemaMismatchError.
    """
    definition = graph.definition
    if global_input_schema is None:
        global_input_schema = definition.input_schema or {}

    order = linearize(graph)
    index_of = {node_id: i for i, node_id in enumerate(order)}
    nodes = {n.id: n for n in definition.nodes}

    steps = []
    for i, node_id in enumerate(order):
        node = nodes[node_id]
        mapper = _compile_node_mapper(node, graph.incoming_edges(node_id), nodes, index_of, global_input_schema)
        depends_on = tuple(sorted(graph.upstream[node_id], key=index_of.__getitem__))
        steps.append(CompiledStep(
            index=i,
            node=node,
            input_mapper=mapper,
            output_schema=node.output_schema,
            depends_on=depends_on,
        ))

    output_mapper = None
    output_edges = graph.output_edges()
    if output_edges:
        output_mapper = InputMapper(bindings=tuple(
            _compile_binding(edge, nodes, index_of, global_input_schema) for edge in output_edges
        ))

    logger.debug(f"Compiled workflow {definition.id}: order={order}")
    return CompiledPipeline(
        workflow_id=definition.id,
        workflow_name=definition.name,
        steps=tuple(steps),
        input_schema=global_input_schema,
        output_mapper=output_mapper,
    )


def compile_definition(
    definition: WorkflowDefinition,
    global_input_schema: Optional[Dict[str, Any]] = None,
) -> CompiledPipeline:
    """Validate then compile in one call."""
    return compile_pipeline(validate(definition), global_input_schema)


def _compile_node_mapper(
    node: StepNode,
    edges: List[DataEdge],
    nodes: Dict[str, StepNode],
    index_of: Dict[str, int],
    global_input_schema: Dict[str, Any],
) -> InputMapper:
    bindings = [_compile_binding(edge, nodes, index_of, global_input_schema) for edge in edges]
    mapped_fields = {head(edge.target_field_path) for edge in edges}

    properties = node.input_schema.get("properties") or {}
    global_properties = global_input_schema.get("properties") or {}

    # Unmapped input fields pick up a global input with the same name
    for name in properties:
        if name not in mapped_fields and name in global_properties:
            bindings.append(Binding(target_path=name, kind=SourceKind.INPUT, source_path=name, implicit=True))
            mapped_fields.add(name)

    defaults = tuple(
        (name, prop["default"]) for name, prop in properties.items()
        if isinstance(prop, dict) and "default" in prop
    )
    deferrable = {name for name, _ in defaults}

    for name in node.input_schema.get("required") or []:
        if name not in mapped_fields and name not in deferrable:
            raise MissingRequiredInputError(
                f"Step '{node.id}' requires input '{name}' but nothing maps to it",
                {"step_id": node.id, "field": name},
            )

    return InputMapper(bindings=tuple(bindings), defaults=defaults)


def _compile_binding(
    edge: DataEdge,
    nodes: Dict[str, StepNode],
    index_of: Dict[str, int],
    global_input_schema: Dict[str, Any],
) -> Binding:
    if edge.transform is not None and edge.transform not in TRANSFORMS:
        raise SchemaMismatchError(
            f"Unknown transform '{edge.transform}' on mapping into {edge.target_step_id}.{edge.target_field_path}",
            {"transform": edge.transform, "target_step_id": edge.target_step_id},
        )

    if edge.source_step_id == STATIC_SOURCE:
        return Binding(
            target_path=edge.target_field_path,
            kind=SourceKind.STATIC,
            transform=edge.transform,
            value=edge.value,
        )

    if edge.source_step_id == INPUT_SOURCE:
        if not schema_has_path(global_input_schema, edge.source_field_path):
            raise SchemaMismatchError(
                f"Global inputs have no field '{edge.source_field_path}'",
                {"source_step_id": INPUT_SOURCE, "source_field_path": edge.source_field_path},
            )
        return Binding(
            target_path=edge.target_field_path,
            kind=SourceKind.INPUT,
            source_path=edge.source_field_path,
            transform=edge.transform,
        )

    source = nodes[edge.source_step_id]
    if not schema_has_path(source.output_schema, edge.source_field_path):
        raise SchemaMismatchError(
            f"Step '{source.id}' does not output '{edge.source_field_path}'",
            {
                "source_step_id": source.id,
                "source_field_path": edge.source_field_path,
                "target_step_id": edge.target_step_id,
            },
        )
    return Binding(
        target_path=edge.target_field_path,
        kind=SourceKind.STEP,
        source_path=edge.source_field_path,
        source_step_id=source.id,
        source_index=index_of[source.id],
        transform=edge.transform,
    )
