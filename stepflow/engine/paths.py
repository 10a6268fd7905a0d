"""
Dotted field paths.

A path like ``data.items.0.title`` (or ``data.items[0].title``) addresses a
nested value. Numeric segments index into lists. The empty path addresses the
whole value.
"""

import re
from typing import Any, Dict, Optional, Tuple

MISSING = object()

_BRACKET = re.compile(r"\[(\d+)\]")


def split_path(path: str) -> Tuple[str, ...]:
    """Split a dotted path into its segments."""
    if not path:
        return ()
    normalized = _BRACKET.sub(r".\1", path.strip())
    parts = tuple(p for p in normalized.split(".") if p)
    if not parts:
        raise ValueError(f"Invalid field path: {path!r}")
    return parts


def head(path: str) -> str:
    """First segment of a path (the top-level field it writes or reads)."""
    parts = split_path(path)
    return parts[0] if parts else ""


def get_value(value: Any, path: str, default: Any = MISSING) -> Any:
    """Walk ``path`` inside ``value``; returns ``default`` when any hop is missing."""
    current = value
    for part in split_path(path):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def set_value(target: Dict[str, Any], path: str, value: Any) -> None:
    """
    Assign ``value`` at ``path``, creating intermediate containers as needed.

    A numeric segment creates a list, padded with None up to the index, unless
    the container it lands in is already a dict.
    """
    parts = split_path(path)
    if not parts:
        raise ValueError("Cannot assign to an empty path")

    current: Any = target
    for part, following in zip(parts, parts[1:]):
        nested = _child(current, part)
        wants_list = following.isdigit()
        if not isinstance(nested, (dict, list)) or (isinstance(nested, list) and not wants_list):
            nested = [] if wants_list else {}
            _assign(current, part, nested)
        current = nested
    _assign(current, parts[-1], value)


def _child(container: Any, part: str) -> Any:
    if isinstance(container, list):
        index = int(part)
        return container[index] if index < len(container) else None
    return container.get(part)


def _assign(container: Any, part: str, value: Any) -> None:
    if isinstance(container, list):
        index = int(part)
        if index >= len(container):
            container.extend([None] * (index + 1 - len(container)))
        container[index] = value
    else:
        container[part] = value


def schema_at(schema: Dict[str, Any], path: str) -> Optional[Dict[str, Any]]:
    """
    Resolve the sub-schema a path points at.

    Returns None when the schema asserts the path does not exist. Schemas that
    declare nothing (no type, or an object with no properties) are open: any
    path below them resolves to an empty schema.
    """
    current = schema or {}
    for part in split_path(path):
        kind = current.get("type")
        if kind == "array":
            if not part.isdigit():
                return None
            current = current.get("items") or {}
            continue
        properties = current.get("properties")
        if kind in (None, "object") and not properties:
            return {}
        if not properties or part not in properties:
            return None
        current = properties[part] or {}
    return current


def schema_has_path(schema: Dict[str, Any], path: str) -> bool:
    return schema_at(schema, path) is not None
