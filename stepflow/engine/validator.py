"""
Structural validation of workflow definitions.

Checks run in a fixed order so the same broken definition always reports the
same error: node id uniqueness, edge references, mapping ambiguity, cycles.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging

from .errors import (
    AmbiguousMappingError, CyclicGraphError, DuplicateNodeError,
    InvalidFieldPathError, UnknownNodeReferenceError,
)
from .models import (
    DataEdge, OUTPUT_TARGET, PSEUDO_SOURCES, STATIC_SOURCE, WorkflowDefinition,
)
from .paths import split_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidatedGraph:
    """A definition that passed every structural check. Treat as read-only."""
    definition: WorkflowDefinition
    node_ids: Tuple[str, ...]  # declaration order
    upstream: Dict[str, Tuple[str, ...]]  # node id -> distinct source step ids
    downstream: Dict[str, Tuple[str, ...]]

    def declaration_index(self, node_id: str) -> int:
        return self.node_ids.index(node_id)

    def incoming_edges(self, node_id: str) -> List[DataEdge]:
        return [e for e in self.definition.edges if e.target_step_id == node_id]

    def output_edges(self) -> List[DataEdge]:
        return self.incoming_edges(OUTPUT_TARGET)


def validate(definition: WorkflowDefinition) -> ValidatedGraph:
    """
    Validate a workflow definition and return its ValidatedGraph.

    Raises a GraphError subclass on the first failing check. Pure: no I/O and
    no connector is ever touched.
    """
    node_ids = _check_unique_ids(definition)
    known = set(node_ids)
    _check_references(definition, known)
    _check_ambiguous_mappings(definition)

    upstream: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    downstream: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
    for edge in definition.edges:
        source, target = edge.source_step_id, edge.target_step_id
        if source not in known or target not in known:
            continue  # pseudo endpoints carry no ordering constraint
        if source not in upstream[target]:
            upstream[target].append(source)
            downstream[source].append(target)

    cycle = _find_cycle(node_ids, downstream)
    if cycle:
        raise CyclicGraphError(cycle)

    logger.debug(f"Validated workflow {definition.id}: {len(node_ids)} nodes, {len(definition.edges)} edges")
    return ValidatedGraph(
        definition=definition,
        node_ids=tuple(node_ids),
        upstream={k: tuple(v) for k, v in upstream.items()},
        downstream={k: tuple(v) for k, v in downstream.items()},
    )


def _check_unique_ids(definition: WorkflowDefinition) -> List[str]:
    seen = set()
    ordered = []
    for node in definition.nodes:
        if node.id in seen:
            raise DuplicateNodeError(f"Duplicate node id: {node.id}", {"node_id": node.id})
        if node.id in PSEUDO_SOURCES or node.id == OUTPUT_TARGET:
            raise DuplicateNodeError(f"Node id '{node.id}' is reserved", {"node_id": node.id})
        seen.add(node.id)
        ordered.append(node.id)
    return ordered


def _check_references(definition: WorkflowDefinition, known: set) -> None:
    for edge in definition.edges:
        if edge.source_step_id not in known and edge.source_step_id not in PSEUDO_SOURCES:
            raise UnknownNodeReferenceError(
                f"Edge source '{edge.source_step_id}' does not exist",
                {"step_id": edge.source_step_id, "role": "source"},
            )
        if edge.target_step_id not in known and edge.target_step_id != OUTPUT_TARGET:
            raise UnknownNodeReferenceError(
                f"Edge target '{edge.target_step_id}' does not exist",
                {"step_id": edge.target_step_id, "role": "target"},
            )
        _check_path(edge, edge.target_field_path, allow_empty=edge.target_step_id == OUTPUT_TARGET)
        _check_path(edge, edge.source_field_path, allow_empty=True)
        if edge.source_step_id == STATIC_SOURCE and edge.source_field_path:
            raise InvalidFieldPathError(
                "Static mappings take a value, not a source path",
                {"target_step_id": edge.target_step_id, "target_field_path": edge.target_field_path},
            )


def _check_path(edge: DataEdge, path: str, allow_empty: bool) -> None:
    try:
        parts = split_path(path)
    except ValueError as e:
        raise InvalidFieldPathError(str(e), {"path": path, "target_step_id": edge.target_step_id})
    if not parts and not allow_empty:
        raise InvalidFieldPathError(
            f"Mapping into '{edge.target_step_id}' has no target field",
            {"target_step_id": edge.target_step_id},
        )


def _check_ambiguous_mappings(definition: WorkflowDefinition) -> None:
    """
    Two mappings onto one step conflict when one target path equals or
    contains the other (`meta` and `meta.author`): whichever is applied last
    would overwrite the other.
    """
    targets: Dict[str, List[Tuple[str, ...]]] = {}
    for edge in definition.edges:
        path = split_path(edge.target_field_path)
        seen = targets.setdefault(edge.target_step_id, [])
        for other in seen:
            shorter = min(len(path), len(other))
            if path[:shorter] == other[:shorter]:
                raise AmbiguousMappingError(
                    f"More than one mapping targets {edge.target_step_id}.{edge.target_field_path}",
                    {
                        "target_step_id": edge.target_step_id,
                        "target_field_path": edge.target_field_path,
                        "conflicts_with": ".".join(other),
                    },
                )
        seen.append(path)


def _find_cycle(node_ids: List[str], downstream: Dict[str, List[str]]) -> Optional[List[str]]:
    """
    Iterative depth-first search with white/grey/black colouring.

    Returns the nodes of the first cycle found (first node repeated at the end),
    or None for an acyclic graph.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {node_id: WHITE for node_id in node_ids}

    for root in node_ids:
        if color[root] != WHITE:
            continue
        path = [root]
        stack = [iter(downstream[root])]
        color[root] = GREY
        while stack:
            nxt = next(stack[-1], None)
            if nxt is None:
                color[path.pop()] = BLACK
                stack.pop()
                continue
            if color[nxt] == GREY:
                return path[path.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                color[nxt] = GREY
                path.append(nxt)
                stack.append(iter(downstream[nxt]))
    return None
