"""
Conversion of source (DofusDB) values into ruleset (KrosmozJDR) values.

Each characteristic can be converted by, in order of precedence:

1. a ``conversion_formula`` (arithmetic or table) evaluated with ``[d]``
   bound to the source value,
2. a typed formula (``formula_type`` + ``parameters``),
3. the built-in defaults of the formula file.

Results are rounded, passed to an optional value handler and clamped to the
characteristic's limits for the target entity.
"""

import logging
import math
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..base import ConfigError, ConversionError
from ..characteristics import ANY_ENTITY, CharacteristicRepository
from ..formula import FormulaEngine
from .resistance import RES_FIELDS, RES_FIXED_FIELDS, SOURCE_KEYS, ResistanceConverter


logger = logging.getLogger("krosmoz-import.conversion")

RESISTANCE_BATCH_ANCHOR = "res_neutre"
RESISTANCE_HANDLER = "resistance_dofus_to_krosmoz"

DEFAULT_ATTRIBUTE_IDS = ["strength", "intelligence", "chance", "agility"]

# Source value ranges sampled for formula previews
PREVIEW_RANGES = {
    "level": (0, 200),
    "life": (0, 5000),
    "strength": (50, 1200),
    "intelligence": (50, 1200),
    "chance": (50, 1200),
    "agility": (50, 1200),
    "initiative": (0, 6000),
    "ini": (0, 6000),
}
PREVIEW_LEVEL = 10


class FormulaConfig(BaseModel):
    """Conversion settings for one characteristic and entity."""

    conversion_formula: str | None = Field(default=None, description="Formula or JSON table over [d] (and [level])")
    formula_type: str | None = Field(default=None, description="linear, linear_with_level, sqrt_attribute, ratio_initiative...")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Parameters of the typed formula or handler")
    handler_name: str | None = Field(default=None, description="Value or batch handler applied after conversion")


class ConversionFormulaRepository:
    """Read-only access to conversion formulas, keyed by characteristic then entity."""

    def __init__(
        self,
        formulas: dict[str, dict[str, FormulaConfig]] | None = None,
        defaults: dict[str, Any] | None = None,
        element_map: dict[int, str] | None = None,
        effect_map: dict[int, str] | None = None,
    ):
        self.formulas = formulas or {}
        self.defaults = defaults or {}
        self.element_map = element_map or {}
        self.effect_map = effect_map or {}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversionFormulaRepository":
        formulas: dict[str, dict[str, FormulaConfig]] = {}
        for char_id, per_entity in (data.get("formulas") or {}).items():
            formulas[char_id] = {}
            for entity, raw in (per_entity or {}).items():
                try:
                    formulas[char_id][entity] = FormulaConfig.model_validate(raw or {})
                except ValidationError as e:
                    raise ConfigError(f"Invalid conversion formula {char_id}/{entity}: {e}") from None
        return cls(
            formulas=formulas,
            defaults=data.get("defaults") or {},
            element_map={int(k): v for k, v in (data.get("element_id_to_resistance") or {}).items()},
            effect_map={int(k): v for k, v in (data.get("effect_id_to_characteristic") or {}).items()},
        )

    @classmethod
    def load(cls, path: Path) -> "ConversionFormulaRepository":
        """Load the formula file (YAML).

        Raises:
            ConfigError: If the file is missing or malformed
        """
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError:
            raise ConfigError(f"Conversion formula file not found: {path}") from None
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read conversion formula file {path}: {e}") from None
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from None
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected a mapping")
        return cls.from_dict(data)

    def get_formula(self, characteristic_id: str, entity: str) -> FormulaConfig | None:
        per_entity = self.formulas.get(characteristic_id) or {}
        return per_entity.get(entity) or per_entity.get(ANY_ENTITY)

    def get_conversion_formula(self, characteristic_id: str, entity: str) -> str | None:
        config = self.get_formula(characteristic_id, entity)
        if config is None or not config.conversion_formula or not config.conversion_formula.strip():
            return None
        return config.conversion_formula

    def get_handler_name(self, characteristic_id: str, entity: str) -> str | None:
        config = self.get_formula(characteristic_id, entity)
        return config.handler_name if config else None


def _number(value: Any) -> float:
    """Coerce a source value to a float; unparseable values count as 0.

    Raises:
        ConversionError: If the value is numeric but not finite
    """
    if isinstance(value, bool) or value is None:
        return 0.0
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            raise ConversionError(f"Value too large: {value!r}") from None
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return 0.0
    else:
        return 0.0
    if not math.isfinite(number):
        raise ConversionError(f"Not a finite number: {value!r}")
    return number


def _round(x: float) -> int:
    # half away from zero
    if not math.isfinite(x):
        raise ConversionError(f"Cannot round non-finite value {x}")
    return int(x + 0.5) if x >= 0 else -int(-x + 0.5)


ValueHandler = Callable[[str, int], Any]
BatchHandler = Callable[[str, dict, dict], dict]


class ConversionFormulas:
    """Characteristic conversions used by the ``dofusdb_*`` formatters."""

    def __init__(
        self,
        characteristics: CharacteristicRepository,
        formulas: ConversionFormulaRepository,
        engine: FormulaEngine | None = None,
    ):
        self.characteristics = characteristics
        self.formulas = formulas
        self.engine = engine or FormulaEngine()
        self.value_handlers: dict[str, ValueHandler] = {}
        self.batch_handlers: dict[str, BatchHandler] = {
            RESISTANCE_HANDLER: ResistanceConverter().convert,
        }

    def register_value_handler(self, name: str, handler: ValueHandler) -> None:
        self.value_handlers[name] = handler

    # =========================================================================
    # Characteristic conversions
    # =========================================================================

    def convert_level(self, value: Any, entity: str = "monster") -> int:
        d = _number(value)
        k = self._from_conversion_formula("level", entity, {"d": d})
        if k is None:
            config = self.formulas.get_formula("level", entity)
            if config is not None and config.formula_type == "linear":
                divisor = _number(config.parameters.get("divisor", 10))
            else:
                divisor = _number(self.formulas.defaults.get("level", {}).get("divisor", 10))
            k = _round(d / divisor) if divisor else 0
        return self.clamp("level", self._apply_value_handler("level", entity, k), entity)

    def convert_life(self, value: Any, level: int, entity: str = "monster") -> int:
        """Convert life points; ``level`` is the already converted ruleset level."""
        d = _number(value)
        k = self._from_conversion_formula("life", entity, {"d": d, "level": level})
        if k is None:
            config = self.formulas.get_formula("life", entity)
            if config is not None and config.formula_type == "linear_with_level":
                params = config.parameters
            else:
                params = self.formulas.defaults.get("life", {})
            divisor = _number(params.get("divisor", 200))
            level_factor = _number(params.get("level_factor", 5))
            k = _round((d / divisor if divisor else 0.0) + level * level_factor)
        return self.clamp("life", self._apply_value_handler("life", entity, k), entity)

    def is_attribute(self, characteristic_id: str) -> bool:
        ids = self.formulas.defaults.get("attribute_ids") or DEFAULT_ATTRIBUTE_IDS
        return characteristic_id in ids

    def convert_attribute(self, characteristic_id: str, value: Any, entity: str = "monster") -> int:
        """Convert a main attribute: ``k = base + coeff * sqrt(max(0, (d - offset) / denom))``."""
        d = _number(value)
        k = self._from_conversion_formula(characteristic_id, entity, {"d": d})
        if k is not None:
            return self.clamp(characteristic_id, k, entity)

        config = self.formulas.get_formula(characteristic_id, entity)
        if config is not None and config.formula_type == "sqrt_attribute":
            p = config.parameters
            base, coeff = _number(p.get("base", 0)), _number(p.get("coeff", 26))
            offset, denom = _number(p.get("offset", 50)), _number(p.get("denom", 1150))
        else:
            defaults = self.formulas.defaults.get("attributes", {})
            offset = _number(defaults.get("offset", 50))
            denom = _number(defaults.get("denom", 1150))
            per_entity = defaults.get(entity) or defaults.get("monster") or {"base": 0, "coeff": 26}
            base, coeff = _number(per_entity.get("base", 0)), _number(per_entity.get("coeff", 26))

        ratio = max(0.0, (d - offset) / denom) if denom else 0.0
        k = _round(base + coeff * ratio ** 0.5)
        return self.clamp(characteristic_id, self._apply_value_handler(characteristic_id, entity, k), entity)

    def convert_initiative(self, value: Any, entity: str = "monster") -> int:
        d = _number(value)
        k = self._from_conversion_formula("ini", entity, {"d": d})
        if k is not None:
            return self.clamp("ini", k, entity)

        config = self.formulas.get_formula("ini", entity)
        if config is not None and config.formula_type == "ratio_initiative":
            params = config.parameters
        else:
            defaults = self.formulas.defaults.get("initiative", {})
            params = defaults.get(entity) or defaults.get("monster") or {}
        offset = _number(params.get("offset", 500))
        denom = _number(params.get("denom", 5000))
        factor = _number(params.get("factor", 10))

        ratio = (d - offset) / denom if denom else 0.0
        if params.get("clamp_ratio_min_zero", False):
            ratio = max(0.0, min(1.0, ratio))
        else:
            ratio = min(1.0, ratio)
        k = _round(factor * ratio)
        if params.get("min_zero", False):
            k = max(0, k)
        return self.clamp("ini", self._apply_value_handler("ini", entity, k), entity)

    def convert_resistances_batch(self, raw: dict[str, Any], entity: str = "monster") -> dict[str, str]:
        """Convert all five resistances of a raw record at once.

        Uses the batch handler configured on ``res_neutre`` when there is one,
        otherwise copies each percentage clamped to the field's limits.
        """
        handler_name = self.formulas.get_handler_name(RESISTANCE_BATCH_ANCHOR, entity)
        handler = self.batch_handlers.get(handler_name) if handler_name else None
        if handler is not None:
            config = self.formulas.get_formula(RESISTANCE_BATCH_ANCHOR, entity)
            result = handler(entity, raw, config.parameters if config else {})
            if isinstance(result, dict):
                return result

        grades = raw.get("grades")
        grade = grades[0] if isinstance(grades, list) and grades and isinstance(grades[0], dict) else raw
        out = {}
        for field, key in zip(RES_FIELDS, SOURCE_KEYS):
            out[field] = str(self.clamp(field, _round(_number(grade.get(key, 0))), entity))
        for field in RES_FIXED_FIELDS:
            out.setdefault(field, "0")
        return out

    def convert_resistance(self, element_id: int, value: Any, entity: str = "monster") -> tuple[str, int] | None:
        """Convert one element resistance, by source element id."""
        field = self.formulas.element_map.get(int(element_id))
        if field is None:
            return None
        return field, self.clamp(field, _round(_number(value)), entity)

    def effects_to_bonus(self, effects: list[dict[str, Any]], entity: str = "item") -> dict[str, int]:
        """Turn item effects into characteristic bonuses (average roll for dice effects)."""
        out = {}
        for effect in effects or []:
            if not isinstance(effect, dict):
                continue
            effect_id = int(_number(effect.get("effectId", effect.get("effect_id", 0))))
            char_id = self.formulas.effect_map.get(effect_id)
            if char_id is None:
                continue
            value = int(_number(effect.get("value", 0)))
            dice_num = int(_number(effect.get("diceNum", 0)))
            dice_side = int(_number(effect.get("diceSide", 0)))
            if dice_num > 0 and dice_side > 0:
                value += _round(dice_num * (dice_side + 1) / 2.0)
            out[char_id] = self.clamp(char_id, value, entity)
        return out

    def preview_points(
        self,
        characteristic_id: str,
        entity: str,
        d_min: int | None = None,
        d_max: int | None = None,
        steps: int = 50,
        formula_override: str | None = None,
    ) -> list[dict[str, float]]:
        """Sample ``{x: d, y: k}`` points of a conversion, for charts."""
        low, high = PREVIEW_RANGES.get(characteristic_id, (0, 200))
        d_min = low if d_min is None else d_min
        d_max = high if d_max is None else d_max
        if d_max <= d_min or steps < 2:
            return []

        step = (d_max - d_min) / (steps - 1)
        points = []
        for i in range(steps):
            d = d_min + i * step
            if formula_override and formula_override.strip():
                y = self.engine.evaluate(formula_override, {"d": d, "level": PREVIEW_LEVEL})
                points.append({"x": _round(d), "y": round(y, 2) if y is not None else 0})
            else:
                points.append({"x": _round(d), "y": self._preview_value(characteristic_id, entity, _round(d))})
        return points

    def _preview_value(self, characteristic_id: str, entity: str, d: int) -> int:
        if characteristic_id == "level":
            return self.convert_level(d, entity)
        if characteristic_id == "life":
            return self.convert_life(d, PREVIEW_LEVEL, entity)
        if self.is_attribute(characteristic_id):
            return self.convert_attribute(characteristic_id, d, entity)
        if characteristic_id in ("ini", "initiative"):
            return self.convert_initiative(d, entity)
        return d

    # =========================================================================
    # Helpers
    # =========================================================================

    def clamp(self, characteristic_id: str, value: int, entity: str) -> int:
        return int(self.characteristics.clamp(characteristic_id, entity, value))

    def _from_conversion_formula(self, characteristic_id: str, entity: str, variables: dict) -> int | None:
        formula = self.formulas.get_conversion_formula(characteristic_id, entity)
        if formula is None:
            return None
        k = self.engine.evaluate(formula, variables)
        return _round(k) if k is not None else 0

    def _apply_value_handler(self, characteristic_id: str, entity: str, value: int) -> int:
        name = self.formulas.get_handler_name(characteristic_id, entity)
        handler = self.value_handlers.get(name) if name else None
        if handler is None:
            return value
        result = handler(entity, value)
        if isinstance(result, (int, float)) and not isinstance(result, bool):
            return _round(float(result))
        logger.warning(f"Value handler '{name}' returned non-numeric {result!r}, keeping {value}")
        return value
