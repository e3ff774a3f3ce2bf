"""
Formula engine: arithmetic and table-mode formulas over named variables.
"""

import logging
import math
import random
from typing import Any

from ..base import ConversionError
from . import decoder, parser
from .decoder import FormulaTable


logger = logging.getLogger("krosmoz-import.formula")


class FormulaEngine:
    """Evaluates designer-authored formulas.

    Arithmetic formulas reference variables as ``[name]``; undefined variables
    count as 0. Table formulas pick a value from a threshold table keyed by
    one characteristic.
    """

    def __init__(self, rng: random.Random | None = None):
        """
        Args:
            rng: Random source used for dice notation (``2d6``); inject a
                seeded instance for reproducible results
        """
        self.rng = rng or random.Random()

    def evaluate(self, expression: Any, variables: dict[str, Any] | None = None) -> float | None:
        """Evaluate a formula.

        Args:
            expression: Arithmetic string, JSON table string or table dict
            variables: Variable values keyed by name

        Returns:
            The numeric result, or None for an empty formula

        Raises:
            ConversionError: If the formula is invalid
        """
        if expression is None:
            return None
        if isinstance(expression, str) and not expression.strip():
            return None
        variables = variables or {}

        table = decoder.decode(expression)
        if table is not None:
            return self._evaluate_table(table, variables)

        if isinstance(expression, (int, float)) and not isinstance(expression, bool):
            try:
                number = float(expression)
            except OverflowError:
                raise ConversionError(f"Formula value too large: {expression!r}") from None
            if not math.isfinite(number):
                raise ConversionError(f"Formula is not a finite number: {expression!r}")
            return number
        return parser.parse(str(expression)).evaluate(variables, self.rng)

    def _evaluate_table(self, table: FormulaTable, variables: dict[str, Any]) -> float | None:
        raw = variables.get(table.characteristic)
        try:
            x = float(raw) if raw is not None else 0.0
        except (TypeError, ValueError):
            x = 0.0
        except OverflowError:
            raise ConversionError(f"Variable [{table.characteristic}] is too large: {raw!r}") from None
        if not math.isfinite(x):
            raise ConversionError(f"Variable [{table.characteristic}] is not a finite number: {raw!r}")

        entry = table.select(x)
        if entry is None:
            return None
        if isinstance(entry.value, str):
            return self.evaluate(entry.value, variables)
        return float(entry.value)

    def evaluate_for_variable_range(
        self,
        expression: Any,
        variable_name: str,
        min_value: int,
        max_value: int,
        base_variables: dict[str, Any] | None = None,
    ) -> dict[int, float]:
        """Evaluate a formula for every integer value of one variable.

        The bounds are inclusive and may be given in either order. Empty
        results are reported as 0.0.
        """
        low, high = sorted((int(min_value), int(max_value)))
        results: dict[int, float] = {}
        for value in range(low, high + 1):
            variables = dict(base_variables or {})
            variables[variable_name] = value
            result = self.evaluate(expression, variables)
            results[value] = result if result is not None else 0.0
        return results

    def validate_formula(self, expression: Any) -> list[str]:
        """List every problem in a formula. Never raises and never evaluates."""
        if expression is None or (isinstance(expression, str) and not expression.strip()):
            return []

        data = decoder.load_object(expression)
        if data is not None:
            return self._validate_table(data)
        if isinstance(expression, (int, float)) and not isinstance(expression, bool):
            return []
        return parser.validate(str(expression))

    def _validate_table(self, data: dict) -> list[str]:
        characteristic = data.get("characteristic")
        if not isinstance(characteristic, str) or not characteristic.strip():
            return ["Table: missing 'characteristic' key"]

        table = decoder.decode(data)
        if not table.entries:
            return ["Table: no threshold entries"]

        errors = []
        for entry in table.entries:
            if isinstance(entry.value, str):
                for error in parser.validate(entry.value):
                    errors.append(f"Table (entry {entry.threshold}): {error}")
        return errors

    @staticmethod
    def is_table(expression: Any) -> bool:
        return decoder.is_table(expression)

    @staticmethod
    def encode_table(characteristic: str, entries: dict[int, Any]) -> str:
        return decoder.encode(characteristic, entries)
