"""Pure value transforms that a mapping edge can apply on the way through."""

import json
from typing import Any, Callable, Dict


def _to_string(value: Any) -> str:
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return "" if value is None else str(value)


def _to_boolean(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes", "y", "on")
    return bool(value)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _last(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[-1] if value else None
    return value


def _parse_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


TRANSFORMS: Dict[str, Callable[[Any], Any]] = {
    "string": _to_string,
    "number": float,
    "integer": int,
    "boolean": _to_boolean,
    "json": _parse_json,
    "lower": lambda v: _to_string(v).lower(),
    "upper": lambda v: _to_string(v).upper(),
    "trim": lambda v: _to_string(v).strip(),
    "first": _first,
    "last": _last,
    "length": len,
}
