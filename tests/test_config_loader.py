"""
Tests for the config registry and the declarative config models.
"""

import json

import pytest

from krosmoz_import.base import ConfigError
from krosmoz_import.config import ConfigRegistry
from krosmoz_import.conversion import FormatterRegistry
from krosmoz_import.settings import PACKAGE_RESOURCES


SOURCE = {"source": "demo", "version": 1, "baseUrl": "https://api.example.org/", "defaultLanguage": "en"}

ENTITY = {
    "source": "demo",
    "entity": "monster",
    "version": 1,
    "endpoints": {
        "fetchOne": {"pathTemplate": "/monsters/{id}", "queryDefaults": {"lang": "{lang}"}},
        "fetchMany": {"path": "/monsters"},
    },
    "filters": {"supported": ["id", {"key": "ids", "max": 10}]},
    "mapping": [
        {"key": "name", "from": {"path": "name"}, "formatters": [{"name": "pickLang"}], "to": [{"model": "creatures", "field": "name"}]},
    ],
}


def write_source(base, source=None, entities=None):
    directory = base / "sources" / "demo"
    (directory / "entities").mkdir(parents=True)
    (directory / "source.json").write_text(json.dumps(source or SOURCE), encoding="utf-8")
    for name, data in (entities or {"monster": ENTITY}).items():
        (directory / "entities" / f"{name}.json").write_text(json.dumps(data), encoding="utf-8")
    return base


class TestLoadSource:
    """sources/<source>/source.json."""

    def test_load_source(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path))
        source = registry.load_source("demo")
        assert source.base_url == "https://api.example.org"
        assert source.default_language == "en"

    def test_missing_source(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            ConfigRegistry(tmp_path).load_source("demo")

    def test_identity_must_match(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path, source={**SOURCE, "source": "other"}))
        with pytest.raises(ConfigError, match="expected 'demo'"):
            registry.load_source("demo")

    def test_version_must_be_integer(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path, source={**SOURCE, "version": "1"}))
        with pytest.raises(ConfigError, match="'version'"):
            registry.load_source("demo")

    def test_invalid_json(self, tmp_path):
        write_source(tmp_path)
        (tmp_path / "sources" / "demo" / "source.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid JSON"):
            ConfigRegistry(tmp_path).load_source("demo")

    def test_undecodable_file(self, tmp_path):
        write_source(tmp_path)
        (tmp_path / "sources" / "demo" / "source.json").write_bytes(b'{"source": "demo", "name": "\xff"}')
        with pytest.raises(ConfigError, match="Cannot read"):
            ConfigRegistry(tmp_path).load_source("demo")

    def test_yaml_source(self, tmp_path):
        directory = tmp_path / "sources" / "demo"
        directory.mkdir(parents=True)
        (directory / "source.yaml").write_text(
            "source: demo\nversion: 1\nbaseUrl: https://api.example.org\n", encoding="utf-8"
        )
        assert ConfigRegistry(tmp_path).load_source("demo").default_language == "fr"


class TestLoadEntity:
    """sources/<source>/entities/<entity>.json."""

    def test_load_entity(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path))
        config = registry.load_entity("demo", "monster")
        assert config.endpoints.fetch_one.path_template == "/monsters/{id}"
        assert config.endpoints.fetch_many.path == "/monsters"
        assert [f.key for f in config.filters.supported] == ["id", "ids"]
        assert config.filters.get("ids").max == 10
        assert config.mapping[0].to[0].models == ["creatures"]
        assert config.target_entity == "monster"

    def test_entity_identity_must_match(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": {**ENTITY, "entity": "spell"}}))
        with pytest.raises(ConfigError, match="'entity'"):
            registry.load_entity("demo", "monster")

    def test_fetch_one_needs_placeholder(self, tmp_path):
        entity = json.loads(json.dumps(ENTITY))
        entity["endpoints"]["fetchOne"]["pathTemplate"] = "/monsters"
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": entity}))
        with pytest.raises(ConfigError, match="Invalid entity config"):
            registry.load_entity("demo", "monster")

    def test_fetch_many_is_required(self, tmp_path):
        entity = json.loads(json.dumps(ENTITY))
        del entity["endpoints"]["fetchMany"]
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": entity}))
        with pytest.raises(ConfigError):
            registry.load_entity("demo", "monster")

    def test_mapping_must_be_a_list(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": {**ENTITY, "mapping": {}}}))
        with pytest.raises(ConfigError, match="'mapping' must be a list"):
            registry.load_entity("demo", "monster")

    def test_empty_mapping_is_allowed(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": {**ENTITY, "mapping": []}}))
        assert registry.load_entity("demo", "monster").mapping == []

    def test_unknown_formatter_rejected(self, tmp_path):
        entity = json.loads(json.dumps(ENTITY))
        entity["mapping"][0]["formatters"] = [{"name": "shout"}]
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": entity}), FormatterRegistry())
        with pytest.raises(ConfigError, match="unknown formatter"):
            registry.load_entity("demo", "monster")

    def test_list_entities(self, tmp_path):
        registry = ConfigRegistry(write_source(tmp_path, entities={"monster": ENTITY, "spell": {**ENTITY, "entity": "spell"}}))
        assert registry.list_entities("demo") == ["monster", "spell"]
        assert registry.list_entities("nothing") == []


class TestBundledConfiguration:
    """Configuration files shipped with the package."""

    def test_every_bundled_entity_loads(self, config_registry):
        entities = config_registry.list_entities("dofusdb")
        assert {"monster", "breed", "spell", "item", "resource", "consumable", "panoply",
                "monster-race", "item-super-type"} <= set(entities)
        for entity in entities:
            config = config_registry.load_entity("dofusdb", entity)
            assert config.source == "dofusdb"

    def test_source(self, config_registry):
        source = config_registry.load_source("dofusdb")
        assert source.base_url == "https://api.dofusdb.fr"
        assert source.default_language == "fr"

    def test_catalog_entities(self, config_registry):
        assert config_registry.load_entity("dofusdb", "monster-race").meta.catalog_only
        super_types = config_registry.load_entity("dofusdb", "item-super-type")
        assert super_types.meta.catalog_only
        assert super_types.meta.collect_strategy.group_by == "superTypeId"

    def test_breed_targets_class(self, config_registry):
        assert config_registry.load_entity("dofusdb", "breed").target_entity == "class"

    def test_resource_discovery_requires_allowed(self, config_registry):
        discovery = config_registry.load_entity("dofusdb", "resource").meta.discovery
        assert discovery[0].registry == "resource_types"
        assert discovery[0].require_allowed is True

    def test_resources_dir_layout(self):
        assert (PACKAGE_RESOURCES / "sources" / "dofusdb" / "source.json").exists()
