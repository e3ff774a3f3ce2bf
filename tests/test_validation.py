"""
Tests for the validation engine and the characteristic repository.
"""

import pytest

from krosmoz_import.base import ConfigError
from krosmoz_import.characteristics import CharacteristicRepository
from krosmoz_import.validation import REQUIRED_MESSAGE, ValidationEngine


@pytest.fixture
def repository():
    return CharacteristicRepository.from_dict({
        "level": {
            "type": "int",
            "applies_to": ["monster", "class"],
            "entities": {
                "monster": {"min": 1, "max": 30, "required": True, "validation_message": "Level between :min and :max"},
                "class": {"min": 1, "max": 20},
            },
        },
        "life": {
            "type": "int",
            "applies_to": ["monster"],
            "entities": {"monster": {"min": 1, "max": 1000, "required": True}},
        },
        "agility": {
            "db_column": "agi",
            "type": "int",
            "entities": {"*": {"min": 0, "max": 50}},
        },
        "chance": {
            "type": "int",
            "entities": {"class": {"required": True}},
        },
        "size": {
            "type": "array",
            "applies_to": ["monster"],
            "value_available": ["small", "medium", "large"],
        },
        "bonus": {
            "type": "int",
            "entities": {"*": {"min": 0}},
        },
    })


@pytest.fixture
def validator(repository):
    return ValidationEngine(repository)


class TestRequiredFields:
    """Required characteristics per entity."""

    def test_missing_required_field_round_trip(self, validator):
        """One missing required field gives exactly one error; supplying it clears it."""
        record = {"creatures": {"level": 5}}
        result = validator.validate(record, "monster")
        assert result.valid is False
        assert len(result.errors) == 1
        assert result.errors[0].path == "life"
        assert result.errors[0].message == REQUIRED_MESSAGE

        record["creatures"]["life"] = 29
        fixed = validator.validate(record, "monster")
        assert fixed.valid is True
        assert fixed.errors == []

    def test_required_field_in_any_group(self, validator):
        record = {"creatures": {"level": 5}, "monsters": {"life": 10}}
        assert validator.validate(record, "monster").valid

    def test_luck_satisfies_chance(self, validator):
        assert validator.validate({"breeds": {"luck": 3}}, "class").valid
        result = validator.validate({"breeds": {}}, "class")
        assert [e.path for e in result.errors] == ["chance"]

    def test_breed_uses_class_rules(self, validator):
        result = validator.validate({"breeds": {}}, "breed")
        assert [e.path for e in result.errors] == ["chance"]


class TestRanges:
    """Integer limits."""

    def test_out_of_range_uses_custom_message(self, validator):
        result = validator.validate({"creatures": {"level": 40, "life": 10}}, "monster")
        assert not result.valid
        assert result.errors[0].path == "level"
        assert result.errors[0].message == "Level between 1 and 30"

    def test_default_range_message(self, validator):
        result = validator.validate({"breeds": {"level": 25, "chance": 1}}, "class")
        assert result.errors[0].message == "level=25 out of range [1, 20] for class"

    def test_range_by_db_column(self, validator):
        result = validator.validate({"creatures": {"level": 5, "life": 10, "agi": 99}}, "monster")
        assert [e.path for e in result.errors] == ["agi"]

    def test_string_values_are_coerced(self, validator):
        assert validator.validate({"creatures": {"level": "5", "life": "10"}}, "monster").valid

    def test_half_open_limits_are_not_checked(self, validator):
        assert validator.validate({"creatures": {"level": 5, "life": 10, "bonus": -5}}, "monster").valid

    def test_all_violations_are_reported(self, validator):
        result = validator.validate({"creatures": {"level": 99, "agi": 99}}, "monster")
        assert sorted(e.path for e in result.errors) == ["agi", "level", "life"]

    def test_non_finite_values_are_reported(self, validator):
        result = validator.validate({"creatures": {"level": float("inf"), "life": "nan"}}, "monster")
        assert sorted(e.path for e in result.errors) == ["level", "life"]
        assert all("not a finite number" in e.message for e in result.errors)


class TestAllowedValues:
    """Array characteristics."""

    def test_value_not_allowed(self, validator):
        result = validator.validate({"creatures": {"level": 5, "life": 10}, "monsters": {"size": "huge"}}, "monster")
        assert len(result.errors) == 1
        assert result.errors[0].path == "monsters.size"

    def test_allowed_value(self, validator):
        record = {"creatures": {"level": 5, "life": 10}, "monsters": {"size": "large"}}
        assert validator.validate(record, "monster").valid

    def test_not_checked_for_other_entities(self, validator):
        assert validator.validate({"breeds": {"size": "huge", "chance": 1}}, "class").valid


class TestCharacteristicRepository:
    """Lookup helpers."""

    def test_limits(self, repository):
        assert repository.get_limits("level", "monster") == (1, 30)
        assert repository.get_limits("agility", "item") == (0, 50)
        assert repository.get_limits("level", "item") is None
        assert repository.get_limits_by_field("agi", "monster") == (0, 50)

    def test_find_by_field(self, repository):
        assert repository.find_by_field("agi").id == "agility"
        assert repository.find_by_field("agility").id == "agility"
        assert repository.find_by_field("unknown") is None

    def test_clamp(self, repository):
        assert repository.clamp("level", "monster", 99) == 30
        assert repository.clamp("level", "monster", 0) == 1
        assert repository.clamp("unknown", "monster", 99) == 99

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            CharacteristicRepository.load(tmp_path / "missing.yaml")

    def test_load_requires_characteristics_key(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("level: {}\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="'characteristics'"):
            CharacteristicRepository.load(path)

    def test_bundled_file_loads(self, characteristics):
        assert characteristics.get("intelligence").column == "intel"
        assert characteristics.get_limits("res_feu", "monster") == (-100, 100)

    def test_load_undecodable_file(self, tmp_path):
        path = tmp_path / "latin1.yaml"
        path.write_bytes("characteristics:\n  level: {name: 'Niveau \xe9'}\n".encode("latin-1"))
        with pytest.raises(ConfigError, match="Cannot read"):
            CharacteristicRepository.load(path)

    def test_load_directory(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            CharacteristicRepository.load(tmp_path)
