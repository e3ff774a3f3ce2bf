"""
Config-driven conversion of a raw source record into model groups.
"""

import logging
from typing import Any

from ..base import ConversionError
from ..config.models import EntityConfig
from .formatters import ConversionContext, FormatterRegistry
from .paths import resolve_path


logger = logging.getLogger("krosmoz-import.conversion")

# Model group receiving batch-converted resistances
RESISTANCE_GROUPS = {
    "monster": "creatures",
    "class": "breeds",
    "breed": "breeds",
    "item": "items",
}


def interpolate_args(args: dict[str, Any], variables: dict[str, str]) -> dict[str, Any]:
    """Replace ``{name}`` placeholders in string arguments."""
    out = {}
    for key, value in args.items():
        if isinstance(value, str):
            for name, replacement in variables.items():
                value = value.replace("{" + name + "}", replacement)
        out[key] = value
    return out


class FieldMapper:
    """Applies an entity's mapping rules to a raw record."""

    def __init__(self, formatters: FormatterRegistry):
        self.formatters = formatters

    def map(
        self,
        raw: dict[str, Any],
        entity_config: EntityConfig,
        context: ConversionContext | None = None,
    ) -> dict[str, dict[str, Any]]:
        """Convert a raw record.

        Rules are applied in declaration order; when two rules write the same
        model field the last one wins.

        Args:
            raw: Raw source record
            entity_config: Entity configuration holding the mapping rules
            context: Entity type and language; defaults to the config's target entity

        Returns:
            Converted record keyed by model group

        Raises:
            ConversionError: If a formatter fails, naming the mapping key
        """
        context = context or ConversionContext(entity_type=entity_config.target_entity)
        variables = {"lang": context.lang}
        out: dict[str, dict[str, Any]] = {}

        for rule in entity_config.mapping:
            value = resolve_path(raw, rule.source.path)
            try:
                for call in rule.formatters:
                    value = self.formatters.apply(call.name, value, interpolate_args(call.args, variables), raw, context)

                for target in rule.to:
                    target_value = value
                    if target.formatter:
                        args = interpolate_args(target.formatter_args, variables)
                        target_value = self.formatters.apply(target.formatter, value, args, raw, context)
                    for model in target.models:
                        out.setdefault(model, {})[target.field] = target_value
            except ConversionError as e:
                raise ConversionError(f"Mapping '{rule.key}': {e}") from e

        if entity_config.resistance_batch:
            self._merge_resistances(out, raw, context)

        return out

    def _merge_resistances(self, out: dict[str, dict[str, Any]], raw: dict[str, Any], context: ConversionContext) -> None:
        group = RESISTANCE_GROUPS.get(context.entity_type)
        conversion = self.formatters.conversion
        if group is None or conversion is None:
            return
        resistances = conversion.convert_resistances_batch(raw, context.entity_type)
        target = out.setdefault(group, {})
        for field, value in resistances.items():
            try:
                target[field] = int(value)
            except (TypeError, ValueError):
                target[field] = value
