"""Flattening of nested resource properties into string-keyed bags.

Both sides of a drift comparison are reduced to ``dict[str, str]`` with the
same rules so values can be compared as text:

- nested objects are joined with "." (``networkAcls.defaultAction``)
- arrays are kept whole as compact JSON text
- booleans are lower-case (``true`` / ``false``), ``None`` is ""
"""

from __future__ import annotations

import json
from typing import Any

KEY_SEPARATOR = "."


def stringify(value: Any) -> str:
    """Render a scalar or array the way property bags store it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list | dict):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, default=str)
    return str(value)


def flatten_properties(obj: Any, prefix: str = "") -> dict[str, str]:
    """Flatten a JSON-like object into a property bag.

    Args:
        obj: Mapping (usually a resource's ``properties`` section).
        prefix: Key prefix for nested calls.

    Returns:
        Flat mapping of dotted keys to string values. Non-mapping input
        yields ``{prefix: value}`` or an empty dict when there is no prefix.
    """
    if not isinstance(obj, dict):
        return {prefix: stringify(obj)} if prefix else {}

    flat: dict[str, str] = {}
    for key, value in obj.items():
        path = f"{prefix}{KEY_SEPARATOR}{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten_properties(value, path))
        elif isinstance(value, dict):
            flat[path] = ""
        else:
            flat[path] = stringify(value)
    return flat
