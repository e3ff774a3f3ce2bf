"""
Validation of converted records against characteristic definitions.
"""

import logging
import math
from typing import Any

from .base import ValidationIssue, ValidationResult
from .characteristics import CharacteristicRepository


logger = logging.getLogger("krosmoz-import.validation")

# Player characters, NPCs and breeds share the class rules
ENTITY_ALIASES = {
    "player": "class",
    "npc": "class",
    "breed": "class",
}

# The only field alias tolerated by the required check
LEGACY_REQUIRED_ALIAS = ("chance", "luck")

REQUIRED_MESSAGE = "required field missing"


def resolve_rules_entity(entity_type: str) -> str:
    return ENTITY_ALIASES.get(entity_type, entity_type)


def _to_int(value: Any) -> int | None:
    """Integer value of a field; None when it is not a finite number."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return 0


class ValidationEngine:
    """Checks required fields, integer ranges and allowed values.

    Never stops at the first problem: every violation is reported.
    """

    def __init__(self, characteristics: CharacteristicRepository):
        self.characteristics = characteristics

    def validate(self, converted: dict[str, dict[str, Any]], entity_type: str) -> ValidationResult:
        """Validate a converted record.

        Args:
            converted: Record keyed by model group (creatures, monsters...)
            entity_type: Entity the record was converted for

        Returns:
            ValidationResult with every violation found
        """
        entity = resolve_rules_entity(entity_type)
        definitions = self.characteristics.get_characteristics()
        merged = self._merge_groups(converted)
        errors: list[ValidationIssue] = []

        # Required fields
        for char_id, definition in definitions.items():
            rules = definition.rules_for(entity)
            if rules is None or not rules.required:
                continue
            if char_id in merged or definition.column in merged:
                continue
            if char_id == LEGACY_REQUIRED_ALIAS[0] and LEGACY_REQUIRED_ALIAS[1] in merged:
                continue
            errors.append(ValidationIssue(path=char_id, message=REQUIRED_MESSAGE))

        # Integer ranges
        for field, value in merged.items():
            if value is None:
                continue
            definition = self.characteristics.find_by_field(field)
            if definition is None or definition.type != "int":
                continue
            rules = definition.rules_for(entity)
            if rules is None or rules.min is None or rules.max is None:
                continue

            low, high = int(rules.min), int(rules.max)
            v = _to_int(value)
            if v is None:
                errors.append(ValidationIssue(
                    path=field, message=f"{definition.id}={value!r} is not a finite number",
                ))
                continue
            if low <= v <= high:
                continue
            message = rules.validation_message or (
                f"{definition.id}={v} out of range [{low}, {high}] for {entity_type}"
            )
            message = message.replace(":min", str(low)).replace(":max", str(high))
            errors.append(ValidationIssue(path=field, message=message))

        # Allowed values
        for char_id, definition in definitions.items():
            if entity not in definition.applies_to or definition.type != "array":
                continue
            allowed = definition.value_available
            if not isinstance(allowed, list):
                continue
            for model, fields in converted.items():
                if not isinstance(fields, dict):
                    continue
                value = fields.get(char_id)
                if value is None:
                    value = fields.get(definition.column)
                if value is None:
                    continue
                if not any(type(value) is type(a) and value == a for a in allowed):
                    errors.append(ValidationIssue(
                        path=f"{model}.{char_id}",
                        message=f"{char_id}={value!r} not allowed. Values: {', '.join(str(a) for a in allowed)}",
                    ))

        if errors:
            logger.debug(f"Validation of {entity_type} found {len(errors)} error(s)")
        return ValidationResult.from_errors(errors)

    @staticmethod
    def _merge_groups(converted: dict[str, Any]) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for fields in converted.values():
            if isinstance(fields, dict):
                merged.update(fields)
        return merged
