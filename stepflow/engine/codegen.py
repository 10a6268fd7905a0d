"""
Code generator.

Renders a CompiledPipeline as readable python source for review and version
control. Only the first header line (the generation timestamp) varies between
calls; the body is a pure function of the pipeline. Generated code is never
executed by the engine.
"""

from datetime import datetime
from typing import Any, List, Optional
import json
import re

from .compiler import Binding, CompiledPipeline, CompiledStep, InputMapper, SourceKind

INDENT = "    "


def generate(pipeline: CompiledPipeline, generated_at: Optional[datetime] = None) -> str:
    """Render ``pipeline`` as python source."""
    stamp = (generated_at or datetime.now()).isoformat(timespec="seconds")
    lines: List[str] = [
        f"# Generated by stepflow at {stamp}",
        *render_body(pipeline),
    ]
    return "\n".join(lines) + "\n"


def render_body(pipeline: CompiledPipeline) -> List[str]:
    """Everything below the timestamp header; deterministic."""
    lines: List[str] = [
        f"# Workflow: {_one_line(pipeline.workflow_name)} ({pipeline.workflow_id})",
        "# Auto-generated from the workflow definition - DO NOT EDIT DIRECTLY",
        "",
        "from copy import deepcopy",
        "",
        "from stepflow.engine.paths import MISSING, get_value, set_value",
        "from stepflow.engine.transforms import TRANSFORMS",
        "",
        f"INPUT_SCHEMA = {_literal(pipeline.input_schema)}",
        f"INPUT_DEFAULTS = {_literal(pipeline.input_defaults())}",
        "",
        "STEPS = [",
    ]
    for step in pipeline.steps:
        lines.append(f"{INDENT}{_literal(_step_entry(step))},")
    lines += [
        "]",
        "",
        "",
        "def _put(target, path, value):",
        f"{INDENT}if value is not MISSING:",
        f"{INDENT * 2}set_value(target, path, value)",
        "",
        "",
        "async def run(inputs, execute_step):",
        f'{INDENT}"""Execute the steps in compiled order; execute_step(step_id, input) performs one step."""',
        f"{INDENT}inputs = {{**deepcopy(INPUT_DEFAULTS), **inputs}}",
        f"{INDENT}outputs = {{}}",
    ]

    for step in pipeline.steps:
        var = _input_var(step)
        node = step.node
        lines.append("")
        lines.append(f"{INDENT}# {step.index + 1}. {_one_line(node.display_name)} [{_describe(step)}]")
        if step.depends_on:
            lines.append(f"{INDENT}# depends on: {', '.join(step.depends_on)}")
        lines += _render_mapper(step.input_mapper, var)
        lines.append(f"{INDENT}outputs[{node.id!r}] = await execute_step({node.id!r}, {var})")

    lines.append("")
    if pipeline.output_mapper is not None:
        lines += _render_mapper(pipeline.output_mapper, "result")
        lines.append(f"{INDENT}return result")
    elif pipeline.steps:
        lines.append(f"{INDENT}return outputs[{pipeline.steps[-1].step_id!r}]")
    else:
        lines.append(f"{INDENT}return None")
    return lines


def _render_mapper(mapper: InputMapper, var: str) -> List[str]:
    lines = [f"{INDENT}{var} = {_literal(dict(mapper.defaults))}"]
    for binding in mapper.bindings:
        value = _value_expr(binding)
        if binding.transform:
            value = f"_transform({binding.transform!r}, {value})"
        if binding.target_path:
            lines.append(f"{INDENT}_put({var}, {binding.target_path!r}, {value})")
        else:
            lines.append(f"{INDENT}{var} = {value}")
    if any(b.transform for b in mapper.bindings):
        lines.insert(0, f"{INDENT}_transform = lambda name, v: v if v is MISSING else TRANSFORMS[name](v)")
    return lines


def _value_expr(binding: Binding) -> str:
    if binding.kind == SourceKind.STATIC:
        return _literal(binding.value)
    if binding.kind == SourceKind.INPUT:
        return f"get_value(inputs, {binding.source_path!r})"
    return f"get_value(outputs[{binding.source_step_id!r}], {binding.source_path!r})"


def _step_entry(step: CompiledStep) -> dict:
    node = step.node
    entry = {"id": node.id, "type": node.type.value, "depends_on": list(step.depends_on)}
    for key in ("toolkit_slug", "action_id", "table_ref"):
        value = getattr(node, key)
        if value:
            entry[key] = value
    if node.code:
        entry["code"] = node.code
    if node.config:
        entry["config"] = node.config
    return entry


def _describe(step: CompiledStep) -> str:
    node = step.node
    parts = [node.type.value]
    if node.toolkit_slug or node.action_id:
        parts.append(f"{node.toolkit_slug}/{node.action_id}")
    if node.table_ref:
        parts.append(f"table={node.table_ref}")
    return " ".join(parts)


def _input_var(step: CompiledStep) -> str:
    name = re.sub(r"\W", "_", step.step_id).strip("_").lower() or "step"
    return f"s{step.index}_{name}_input"


def _literal(value: Any) -> str:
    """Stable python literal for JSON-like values."""
    text = json.dumps(value, sort_keys=True, default=str)
    # JSON and python literals differ only in these three keywords
    return re.sub(
        r'("(?:[^"\\]|\\.)*")|\btrue\b|\bfalse\b|\bnull\b',
        lambda m: m.group(1) or {"true": "True", "false": "False", "null": "None"}[m.group(0)],
        text,
    )


def _one_line(text: str) -> str:
    return " ".join((text or "").split())
