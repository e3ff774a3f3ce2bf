"""
Dotted-path access into raw source records.
"""

from typing import Any


def resolve_path(data: Any, path: str) -> Any:
    """Read ``a.b.0.c`` from nested dicts and lists.

    Numeric segments index lists. Any absent segment yields None; this
    function never raises.
    """
    if not path:
        return None
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part in current:
                current = current[part]
            elif part.isdigit() and int(part) in current:
                current = current[int(part)]
            else:
                return None
        elif isinstance(current, (list, tuple)):
            if not part.isdigit():
                return None
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        else:
            return None
    return current
