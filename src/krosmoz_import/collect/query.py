"""
Query building for Feathers-style source APIs.

Filters are first translated into a nested query (``{"id": {"$in": [1, 2]}}``)
and then flattened into bracketed pairs (``id[$in][]=1&id[$in][]=2``).
"""

import logging
from typing import Any

from ..config.models import Filters


logger = logging.getLogger("krosmoz-import.collect")

# Default caps on list-valued filters
LIST_FILTER_MAX = {
    "ids": 500,
    "raceIds": 5000,
    "typeIds": 5000,
    "typeIdsNot": 8000,
}


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _int_list(values: Any, cap: int) -> list[int]:
    if not isinstance(values, (list, tuple, set)):
        return []
    ids: list[int] = []
    for value in values:
        number = _as_int(value)
        if number is not None and number not in ids:
            ids.append(number)
    return ids[:cap] if cap > 0 else ids


def _operator(query: dict[str, Any], field: str, op: str, value: Any) -> None:
    current = query.get(field)
    if current is not None and not isinstance(current, dict):
        # An exact value already pins the field
        logger.debug(f"Ignoring {field}[{op}] alongside {field}={current!r}")
        return
    if current is None:
        current = {}
        query[field] = current
    current[op] = value


def filters_to_query(supported: Filters, filters: dict[str, Any] | None) -> dict[str, Any]:
    """Translate caller filters into a nested Feathers query.

    Only filters declared in ``filters.supported`` are used; others are
    logged and dropped.
    """
    query: dict[str, Any] = {}
    for key, value in (filters or {}).items():
        declared = supported.get(key)
        if declared is None:
            logger.warning(f"Ignoring unsupported filter '{key}'")
            continue
        if value is None or value == "":
            continue
        cap = declared.max or LIST_FILTER_MAX.get(key, 0)

        if key in ("id", "breedId", "typeId") and _as_int(value) is not None:
            query[key] = _as_int(value)
        elif key == "raceId" and _as_int(value) is not None:
            query["race"] = _as_int(value)
        elif key == "idMin" and _as_int(value) is not None:
            _operator(query, "id", "$gte", _as_int(value))
        elif key == "idMax" and _as_int(value) is not None:
            _operator(query, "id", "$lte", _as_int(value))
        elif key == "levelMin" and _as_int(value) is not None:
            _operator(query, "level", "$gte", _as_int(value))
        elif key == "levelMax" and _as_int(value) is not None:
            _operator(query, "level", "$lte", _as_int(value))
        elif key == "name" and isinstance(value, str):
            query["name"] = {"$search": value}
        elif key == "ids":
            ids = _int_list(value, cap)
            if ids:
                _operator(query, "id", "$in", ids)
        elif key == "raceIds":
            ids = _int_list(value, cap)
            if ids:
                _operator(query, "race", "$in", ids)
        elif key == "typeIds":
            ids = _int_list(value, cap)
            if ids:
                _operator(query, "typeId", "$in", ids)
        elif key == "typeIdsNot":
            ids = _int_list(value, cap)
            if ids:
                _operator(query, "typeId", "$nin", ids)
        else:
            logger.warning(f"Ignoring filter '{key}' with invalid value {value!r}")
    return query


def flatten_query(query: dict[str, Any]) -> list[tuple[str, str]]:
    """Flatten a nested query into bracketed key/value pairs."""
    pairs: list[tuple[str, str]] = []
    for key, value in query.items():
        if key:
            _flatten(pairs, key, value)
    return pairs


def _flatten(pairs: list[tuple[str, str]], prefix: str, value: Any) -> None:
    if isinstance(value, dict):
        for key, sub in value.items():
            _flatten(pairs, f"{prefix}[{key}]", sub)
    elif isinstance(value, (list, tuple)):
        for sub in value:
            _flatten(pairs, f"{prefix}[]", sub)
    elif isinstance(value, bool):
        pairs.append((prefix, "true" if value else "false"))
    elif value is None or value == "":
        return
    else:
        pairs.append((prefix, str(value)))


def interpolate_defaults(defaults: dict[str, Any], lang: str) -> dict[str, Any]:
    return {k: v.replace("{lang}", lang) if isinstance(v, str) else v for k, v in defaults.items()}
