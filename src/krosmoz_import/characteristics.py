"""
Characteristic definitions: limits, required flags and allowed values per entity.

The repository is read-only and injected into the validation engine and the
formatter registry. It is loaded once from YAML (or built from plain dicts
in tests); reloading is the caller's concern.
"""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from .base import ConfigError


logger = logging.getLogger("krosmoz-import.characteristics")

ANY_ENTITY = "*"


class EntityRules(BaseModel):
    """Per-entity rules for one characteristic."""

    min: float | None = Field(default=None, description="Lower bound (int characteristics)")
    max: float | None = Field(default=None, description="Upper bound (int characteristics)")
    required: bool = Field(default=False, description="Whether a converted record must carry the field")
    validation_message: str | None = Field(
        default=None,
        description="Custom range message; ':min' and ':max' are substituted"
    )
    default_value: Any = Field(default=None, description="Value used when the source has none")
    conversion_formula: str | None = Field(
        default=None,
        description="Formula turning the source value [d] into the ruleset value"
    )


class CharacteristicDefinition(BaseModel):
    """One characteristic of the ruleset (level, life, res_feu, size...)."""

    id: str = Field(description="Characteristic id")
    db_column: str | None = Field(default=None, description="Storage column when it differs from the id")
    type: Literal["int", "array", "string"] = Field(default="int", description="Value type")
    applies_to: set[str] = Field(default_factory=set, description="Entities the characteristic applies to")
    value_available: list[Any] | None = Field(default=None, description="Allowed values (array characteristics)")
    per_entity: dict[str, EntityRules] = Field(default_factory=dict, description="Rules keyed by entity ('*' = default)")

    @property
    def column(self) -> str:
        return self.db_column or self.id

    def rules_for(self, entity: str) -> EntityRules | None:
        return self.per_entity.get(entity) or self.per_entity.get(ANY_ENTITY)


class CharacteristicRepository:
    """Read-only access to characteristic definitions."""

    def __init__(self, definitions: list[CharacteristicDefinition] | None = None):
        self._definitions: dict[str, CharacteristicDefinition] = {}
        for definition in definitions or []:
            self._definitions[definition.id] = definition

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CharacteristicRepository":
        """Build a repository from ``{id: {db_column, type, entities: {...}}}``."""
        definitions = []
        for char_id, raw in (data or {}).items():
            raw = dict(raw or {})
            raw.setdefault("id", char_id)
            if "entities" in raw:
                raw["per_entity"] = raw.pop("entities")
            try:
                definitions.append(CharacteristicDefinition.model_validate(raw))
            except ValidationError as e:
                raise ConfigError(f"Invalid characteristic '{char_id}': {e}") from None
        return cls(definitions)

    @classmethod
    def load(cls, path: Path) -> "CharacteristicRepository":
        """Load definitions from a YAML file with a top-level ``characteristics`` map.

        Raises:
            ConfigError: If the file is missing or malformed
        """
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError:
            raise ConfigError(f"Characteristics file not found: {path}") from None
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read characteristics file {path}: {e}") from None
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from None

        if not isinstance(data, dict) or not isinstance(data.get("characteristics"), dict):
            raise ConfigError(f"{path}: expected a 'characteristics' mapping")

        repository = cls.from_dict(data["characteristics"])
        logger.debug(f"Loaded {len(repository._definitions)} characteristics from {path}")
        return repository

    def get_characteristics(self) -> dict[str, CharacteristicDefinition]:
        return dict(self._definitions)

    def get(self, characteristic_id: str) -> CharacteristicDefinition | None:
        return self._definitions.get(characteristic_id)

    def find_by_field(self, field: str) -> CharacteristicDefinition | None:
        """Resolve a record field name to a characteristic, by id then by db_column."""
        if field in self._definitions:
            return self._definitions[field]
        for definition in self._definitions.values():
            if definition.column == field:
                return definition
        return None

    def get_rules(self, characteristic_id: str, entity: str) -> EntityRules | None:
        definition = self._definitions.get(characteristic_id)
        return definition.rules_for(entity) if definition else None

    def get_limits(self, characteristic_id: str, entity: str) -> tuple[float | None, float | None] | None:
        """Return ``(min, max)`` for a characteristic and entity, or None when undefined."""
        rules = self.get_rules(characteristic_id, entity)
        if rules is None:
            return None
        return rules.min, rules.max

    def get_limits_by_field(self, field: str, entity: str) -> tuple[float | None, float | None] | None:
        definition = self.find_by_field(field)
        if definition is None:
            return None
        return self.get_limits(definition.id, entity)

    def clamp(self, characteristic_id: str, entity: str, value: float) -> float:
        """Clamp a value to the characteristic's limits; unknown limits leave it unchanged."""
        limits = self.get_limits(characteristic_id, entity)
        if limits is None:
            return value
        low, high = limits
        if low is not None and value < low:
            value = low
        if high is not None and value > high:
            value = high
        return value
