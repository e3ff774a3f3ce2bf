"""
Named formatters applied to source values during field mapping.

The set of formatters is closed: configurations are checked against
``FormatterRegistry.supports`` when they are loaded and an unknown name
fails the conversion instead of passing the value through.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable

from ..base import ConversionError
from ..characteristics import CharacteristicRepository
from .formulas import ConversionFormulas
from .paths import resolve_path


logger = logging.getLogger("krosmoz-import.conversion")

SIZES = ["tiny", "small", "medium", "large", "huge"]

# minimum ruleset level -> rarity
RARITY_BY_LEVEL = {0: 0, 3: 1, 7: 2, 10: 3, 17: 4}


@dataclass
class ConversionContext:
    """What a formatter knows about the record being converted."""

    entity_type: str = "monster"
    lang: str = "fr"


Formatter = Callable[[Any, dict, dict, ConversionContext], Any]


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value.strip())
            return True
        except ValueError:
            return False
    return False


def _to_int(value: Any) -> int:
    return int(float(value)) if _is_numeric(value) else 0


def pick_lang(value: Any, lang: str = "fr", fallback: str = "fr") -> str:
    """Pick a translation from a ``{lang: text}`` map."""
    if isinstance(value, str):
        return value
    if not isinstance(value, dict):
        return ""
    for key in (lang, fallback):
        if isinstance(value.get(key), str):
            return value[key]
    first = next(iter(value.values()), None)
    return first if isinstance(first, str) else ""


class FormatterRegistry:
    """Closed map of formatter name to behaviour."""

    def __init__(
        self,
        conversion: ConversionFormulas | None = None,
        characteristics: CharacteristicRepository | None = None,
    ):
        self.conversion = conversion
        self.characteristics = characteristics or (conversion.characteristics if conversion else None)

        self._formatters: dict[str, Formatter] = {
            "toString": lambda v, a, r, c: "" if v is None else str(v),
            "pickLang": lambda v, a, r, c: pick_lang(v, str(a.get("lang", c.lang)), str(a.get("fallback", "fr"))),
            "toInt": lambda v, a, r, c: _to_int(v),
            "nullableInt": lambda v, a, r, c: None if v is None else (_to_int(v) if _is_numeric(v) else None),
            "clampInt": self._clamp_int,
            "clampToCharacteristic": self._clamp_to_characteristic,
            "mapSizeToKrosmoz": lambda v, a, r, c: v if v in SIZES else str(a.get("default", "medium")),
            "storeScrappedImage": lambda v, a, r, c: None if v is None else str(v),
            "truncate": self._truncate,
            "toJson": lambda v, a, r, c: None if v is None else json.dumps(v, ensure_ascii=False),
            "extractItemIds": self._extract_item_ids,
            "defaultRarityByLevel": self._default_rarity_by_level,
            "recipeIdsToResourceRecipe": lambda v, a, r, c: self._recipe_ids_to_recipe(v),
            "recipeToResourceRecipe": self._recipe_to_recipe,
        }
        if conversion is not None:
            self._formatters.update({
                "dofusdb_level": lambda v, a, r, c: conversion.convert_level(v, c.entity_type),
                "dofusdb_life": self._dofusdb_life,
                "dofusdb_attribute": self._dofusdb_attribute,
                "dofusdb_ini": lambda v, a, r, c: conversion.convert_initiative(v, c.entity_type),
                "dofusdb_resistance": self._dofusdb_resistance,
            })

    def supports(self, name: str) -> bool:
        return name in self._formatters

    def names(self) -> list[str]:
        return sorted(self._formatters)

    def apply(
        self,
        name: str,
        value: Any,
        args: dict[str, Any] | None = None,
        raw: dict[str, Any] | None = None,
        context: ConversionContext | None = None,
    ) -> Any:
        """Apply one formatter.

        Args:
            name: Formatter name
            value: Current value
            args: Formatter arguments from the mapping
            raw: Whole raw record, for formatters reading sibling fields
            context: Entity type and language of the conversion

        Raises:
            ConversionError: If the formatter is unknown or fails
        """
        formatter = self._formatters.get(name)
        if formatter is None:
            raise ConversionError(f"Unknown formatter '{name}'")
        try:
            return formatter(value, args or {}, raw or {}, context or ConversionContext())
        except ConversionError:
            raise
        except (TypeError, ValueError, KeyError, AttributeError, ArithmeticError) as e:
            raise ConversionError(f"Formatter '{name}' failed on {value!r}: {e}") from e

    # =========================================================================
    # Formatters
    # =========================================================================

    @staticmethod
    def _clamp_int(value, args, raw, context) -> int:
        v = _to_int(value)
        low, high = int(args.get("min", 0)), int(args.get("max", 0))
        if high != 0 and high < low:
            return v
        return max(low, min(high, v))

    def _clamp_to_characteristic(self, value, args, raw, context) -> int:
        v = _to_int(value)
        characteristic_id = str(args.get("characteristicId", ""))
        if self.characteristics is None or not characteristic_id:
            return v
        return int(self.characteristics.clamp(characteristic_id, context.entity_type, v))

    @staticmethod
    def _truncate(value, args, raw, context) -> str:
        text = "" if value is None else str(value)
        limit = int(args.get("max", 255))
        return text if limit <= 0 else text[:limit]

    @staticmethod
    def _extract_item_ids(value, args, raw, context) -> list[int]:
        if not isinstance(value, list):
            return []
        return [int(item["id"]) for item in value if isinstance(item, dict) and "id" in item]

    def _default_rarity_by_level(self, value, args, raw, context) -> int:
        if _is_numeric(value):
            return _to_int(value)
        raw_level = _to_int(resolve_path(raw, "level"))
        if self.conversion is not None:
            level = self.conversion.convert_level(raw_level, context.entity_type)
        else:
            level = round(raw_level / 10)
        for min_level in sorted(RARITY_BY_LEVEL, reverse=True):
            if level >= min_level:
                return RARITY_BY_LEVEL[min_level]
        return 0

    @staticmethod
    def _recipe_ids_to_recipe(value) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        ids = [_to_int(v) for v in value if _is_numeric(v)]
        return [
            {"ingredient_dofusdb_id": str(ingredient_id), "quantity": quantity}
            for ingredient_id, quantity in Counter(ids).items()
        ]

    def _recipe_to_recipe(self, value, args, raw, context) -> list[dict[str, Any]]:
        if isinstance(value, dict) and "ingredientIds" in value and "quantities" in value:
            ids, quantities = value["ingredientIds"], value["quantities"]
            if not isinstance(ids, list) or not isinstance(quantities, list):
                return []
            out = []
            for index, ingredient_id in enumerate(ids):
                if not _is_numeric(ingredient_id):
                    continue
                quantity = quantities[index] if index < len(quantities) and _is_numeric(quantities[index]) else 1
                out.append({
                    "ingredient_dofusdb_id": str(_to_int(ingredient_id)),
                    "quantity": max(1, _to_int(quantity)),
                })
            return out
        return self._recipe_ids_to_recipe(raw.get("recipeIds") or [])

    def _dofusdb_life(self, value, args, raw, context) -> int:
        level_path = str(args.get("levelPath", "grades.0.level"))
        level = self.conversion.convert_level(resolve_path(raw, level_path), context.entity_type)
        return self.conversion.convert_life(value, level, context.entity_type)

    def _dofusdb_attribute(self, value, args, raw, context) -> Any:
        if "characteristicId" not in args:
            return value
        return self.conversion.convert_attribute(str(args["characteristicId"]), value, context.entity_type)

    def _dofusdb_resistance(self, value, args, raw, context) -> Any:
        field = str(args.get("field", ""))
        tiers = self.conversion.convert_resistances_batch(raw, context.entity_type)
        if field not in tiers:
            raise ConversionError(f"Unknown resistance field '{field}'")
        return tiers[field]
