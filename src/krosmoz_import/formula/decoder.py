"""
Decoding and encoding of table-mode formulas.

A table formula is a JSON object naming a characteristic plus numeric
threshold keys, e.g. ``{"characteristic": "level", "1": 0, "7": "[level]/2"}``.
"""

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass
class TableEntry:
    threshold: int
    value: float | str  # number, or a sub-formula


@dataclass
class FormulaTable:
    characteristic: str
    entries: list[TableEntry] = field(default_factory=list)

    def select(self, x: float) -> TableEntry | None:
        """Entry with the largest threshold <= x, else the lowest entry."""
        if not self.entries:
            return None
        chosen = None
        for entry in self.entries:
            if entry.threshold <= x:
                chosen = entry
            else:
                break
        return chosen or self.entries[0]


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def load_object(expression: Any) -> dict | None:
    if isinstance(expression, dict):
        return expression
    if not isinstance(expression, str):
        return None
    text = expression.strip()
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def decode(expression: Any) -> FormulaTable | None:
    """Decode a table formula.

    Returns:
        The table, or None when the expression is not a table (plain
        arithmetic, or a JSON object without a ``characteristic`` string)
    """
    data = load_object(expression)
    if data is None:
        return None
    characteristic = data.get("characteristic")
    if not isinstance(characteristic, str) or not characteristic.strip():
        return None

    entries = []
    for key, raw_value in data.items():
        if key == "characteristic":
            continue
        threshold = _as_number(key)
        if threshold is None:
            continue
        number = _as_number(raw_value)
        if number is not None:
            value = number
        elif isinstance(raw_value, str) and raw_value.strip():
            value = raw_value.strip()
        else:
            continue
        entries.append(TableEntry(threshold=int(threshold), value=value))

    entries.sort(key=lambda e: e.threshold)
    return FormulaTable(characteristic=characteristic.strip(), entries=entries)


def is_table(expression: Any) -> bool:
    return decode(expression) is not None


def encode(characteristic: str, entries: list[TableEntry] | dict[int, Any]) -> str:
    """Serialize a table formula back to its JSON form."""
    if isinstance(entries, dict):
        entries = [TableEntry(int(k), v) for k, v in entries.items()]
    data: dict[str, Any] = {"characteristic": characteristic}
    for entry in sorted(entries, key=lambda e: e.threshold):
        value = entry.value
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        data[str(entry.threshold)] = value
    return json.dumps(data, ensure_ascii=False)
