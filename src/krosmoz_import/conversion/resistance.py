"""
Conversion of source resistance percentages into ruleset resistance tiers.

Each element (neutral, earth, fire, air, water) gets one tier among
100 (invulnerable), 50 (resistant), -50 (weak), -100 (vulnerable) or 0,
and the number of elements per tier is capped.
"""

import math
from typing import Any

from ..base import ConversionError


RES_FIELDS = ["res_neutre", "res_terre", "res_feu", "res_air", "res_eau"]
RES_FIXED_FIELDS = ["res_fixe_neutre", "res_fixe_terre", "res_fixe_feu", "res_fixe_air", "res_fixe_eau"]
SOURCE_KEYS = ["neutralResistance", "earthResistance", "fireResistance", "airResistance", "waterResistance"]

# Checked in this order, bounds inclusive
DEFAULT_THRESHOLDS: dict[int, tuple[float, float]] = {
    100: (90.0, 101.0),
    50: (40.0, 90.0),
    -50: (-90.0, -40.0),
    -100: (-101.0, -90.0),
}

DEFAULT_CAPS = {
    "max_invulnerable": 1,
    "max_resistant": 3,
    "max_weak": 3,
    "max_vulnerable": 2,
}

# Custom thresholds are checked in this order
CUSTOM_TIER_ORDER = [50, 100, -50, -100]

_CAP_BY_TIER = {
    100: "max_invulnerable",
    50: "max_resistant",
    -50: "max_weak",
    -100: "max_vulnerable",
}


def _numeric(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            raise ConversionError(f"Resistance value too large: {value!r}") from None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(number):
        raise ConversionError(f"Resistance is not a finite number: {value!r}")
    return number


class ResistanceConverter:
    """Maps raw resistance percentages to capped tiers."""

    def convert(self, entity_type: str, raw: dict[str, Any], parameters: dict[str, Any] | None = None) -> dict[str, str]:
        """Convert the resistances of a raw record.

        Args:
            entity_type: Target entity (monster, class, item); the rules are the same for all
            raw: Raw source record; the first grade is used when present
            parameters: Optional ``thresholds`` and ``max_*`` cap overrides

        Returns:
            The five ``res_*`` tiers and five ``res_fixe_*`` values, as strings
        """
        parameters = parameters or {}
        grade = self._extract_grade(raw)
        thresholds = self._thresholds(parameters)
        caps = {name: int(parameters.get(name, default)) for name, default in DEFAULT_CAPS.items()}

        tiers = {}
        for field, key in zip(RES_FIELDS, SOURCE_KEYS):
            tiers[field] = self._percent_to_tier(_numeric(grade.get(key, 0)), thresholds)

        self._apply_caps(tiers, caps)

        out = {field: str(tiers[field]) for field in RES_FIELDS}
        for fixed_field in RES_FIXED_FIELDS:
            # fixed remainder stays 0
            out[fixed_field] = "0"
        return out

    @staticmethod
    def _extract_grade(raw: dict[str, Any]) -> dict[str, Any]:
        grades = raw.get("grades")
        if isinstance(grades, list) and grades:
            return grades[0] if isinstance(grades[0], dict) else {}
        return raw

    @staticmethod
    def _thresholds(parameters: dict[str, Any]) -> dict[int, tuple[float, float]]:
        custom = parameters.get("thresholds")
        if isinstance(custom, dict):
            out = {}
            for tier in CUSTOM_TIER_ORDER:
                bounds = custom.get(tier, custom.get(str(tier)))
                if isinstance(bounds, dict) and "min" in bounds and "max" in bounds:
                    out[tier] = (float(bounds["min"]), float(bounds["max"]))
            if out:
                return out
        return DEFAULT_THRESHOLDS

    @staticmethod
    def _percent_to_tier(percent: float, thresholds: dict[int, tuple[float, float]]) -> int:
        for tier, (low, high) in thresholds.items():
            if low <= percent <= high:
                return tier
        return 0

    @staticmethod
    def _apply_caps(tiers: dict[str, int], caps: dict[str, int]) -> None:
        # stable sort: equal magnitudes keep element order
        order = sorted(
            (field for field in RES_FIELDS if tiers[field] != 0),
            key=lambda field: abs(tiers[field]),
            reverse=True,
        )
        counts = {tier: 0 for tier in _CAP_BY_TIER}
        for field in order:
            tier = tiers[field]
            if counts[tier] >= caps[_CAP_BY_TIER[tier]]:
                tiers[field] = 0
            else:
                counts[tier] += 1
