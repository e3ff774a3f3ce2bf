"""
Tests for the import orchestrator.
"""

import json
import shutil

import httpx
import pytest

from krosmoz_import.characteristics import CharacteristicRepository
from krosmoz_import.cli import build_orchestrator
from krosmoz_import.collect import SourceClient
from krosmoz_import.discovery import Decision, DiscoveryRegistry, ModerationService
from krosmoz_import.orchestrator import RunOptions, Stage
from krosmoz_import.settings import PACKAGE_RESOURCES
from krosmoz_import.validation import ValidationEngine


def monster(id, level):
    return {"id": id, "name": {"fr": f"Monstre {id}"}, "race": 1, "grades": [{"level": level, "lifePoints": 800}]}


def paged(rows):
    def route(request: httpx.Request) -> httpx.Response:
        skip = int(request.url.params.get("$skip", 0))
        limit = int(request.url.params.get("$limit", 10))
        return httpx.Response(200, json={"total": len(rows), "limit": limit, "skip": skip, "data": rows[skip:skip + limit]})
    return route


def strict_validator(max_level):
    """Monster rules with a low level cap, to force validation failures."""
    return ValidationEngine(CharacteristicRepository.from_dict({
        "level": {"type": "int", "entities": {"monster": {"min": 1, "max": max_level, "required": True}}},
    }))


WOOD = {"id": 100, "name": {"fr": "Bois de Frêne"}, "level": 20, "typeId": 15, "type": {"name": {"fr": "Bois"}}}


@pytest.fixture
def registry():
    return DiscoveryRegistry.from_url("sqlite://")


# ==============================================================================
# Run options
# ==============================================================================

class TestRunOptions:
    """Trigger flags to run options."""

    def test_default_flags_convert_and_validate_only(self):
        options = RunOptions.from_flags()
        assert options.convert and options.validate
        assert options.integrate is False

    def test_integrate_flag(self):
        assert RunOptions.from_flags(integrate=True).integrate is True

    def test_dry_run_integrates_without_writing(self):
        options = RunOptions.from_flags(dry_run=True)
        assert options.integrate is True
        assert options.integration_options().dry_run is True

    def test_validate_only_wins(self):
        assert RunOptions.from_flags(integrate=True, validate_only=True).integrate is False

    def test_extra_options(self):
        options = RunOptions.from_flags(force_update=True, lang="en", limit=5)
        assert options.lang == "en"
        assert options.limit == 5
        assert options.integration_options().force_update is True

    def test_raw_only(self):
        assert RunOptions(convert=False, validate=False, integrate=False).processes is False


# ==============================================================================
# Single record
# ==============================================================================

class TestRunOne:
    """One record through collect, convert, validate and integrate."""

    @pytest.mark.anyio
    async def test_bouftou_with_raw(self, settings, fake_source, bouftou):
        """Level 50 becomes 5 and feeds the life formula (800 -> 29)."""
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client).run_one_with_raw("dofusdb", "monster", bouftou)
        assert result.success is True
        assert result.stage == Stage.SUCCEEDED
        assert result.converted["creatures"]["level"] == 5
        assert result.converted["creatures"]["life"] == 29
        assert result.validation_errors == []
        assert result.integration is None

    @pytest.mark.anyio
    async def test_bouftou_collected(self, settings, fake_source, bouftou):
        source = fake_source({"/monsters/31": bouftou})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client).run_one("dofusdb", "monster", 31)
        assert result.success
        assert result.raw["id"] == 31
        assert result.converted["creatures"]["name"] == "Bouftou"
        assert len(source.requests) == 1

    @pytest.mark.anyio
    async def test_language_option(self, settings, fake_source, bouftou):
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client).run_one_with_raw(
                "dofusdb", "monster", bouftou, RunOptions(lang="en"),
            )
        assert result.converted["creatures"]["name"] == "Gobball"


    @pytest.mark.anyio
    async def test_language_defaults_to_source_language(self, settings, fake_source, bouftou, tmp_path):
        resources = tmp_path / "resources"
        shutil.copytree(PACKAGE_RESOURCES, resources)
        source_file = resources / "sources" / "dofusdb" / "source.json"
        source_file.write_text(
            json.dumps({**json.loads(source_file.read_text(encoding="utf-8")), "defaultLanguage": "en"}),
            encoding="utf-8",
        )
        settings = settings.model_copy(update={"resources_dir": resources})
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client).run_one_with_raw("dofusdb", "monster", bouftou)
        assert result.converted["creatures"]["name"] == "Gobball"

    @pytest.mark.anyio
    async def test_recipe_lookup_uses_run_language(self, settings, fake_source):
        source = fake_source({"/recipes": {"total": 1, "data": [{"resultId": 44, "ingredientIds": [1], "quantities": [1]}]}})
        raw = {"id": 44, "name": {"fr": "Épée", "en": "Sword"}, "level": 10, "typeId": 6, "hasRecipe": True}
        async with SourceClient(settings, source.transport) as client:
            await build_orchestrator(settings, client).run_one_with_raw("dofusdb", "item", raw, RunOptions(lang="en"))
        assert [r.url.params["lang"] for r in source.requests] == ["en"]
    @pytest.mark.anyio
    async def test_collect_failure(self, settings, fake_source):
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client).run_one("dofusdb", "monster", 999)
        assert result.success is False
        assert result.stage == Stage.FAILED
        assert result.failed_stage == Stage.COLLECTING
        assert result.raw is None

    @pytest.mark.anyio
    async def test_unknown_entity(self, settings, fake_source):
        source = fake_source({})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client).run_one("dofusdb", "dragon", 1)
        assert result.failed_stage == Stage.COLLECTING
        assert source.requests == []

    @pytest.mark.anyio
    async def test_validation_failure_keeps_conversion(self, settings, fake_source, bouftou):
        async with SourceClient(settings, fake_source({}).transport) as client:
            orchestrator = build_orchestrator(settings, client)
            orchestrator.validator = strict_validator(max_level=3)
            result = await orchestrator.run_one_with_raw("dofusdb", "monster", bouftou, RunOptions.from_flags(integrate=True))
        assert result.success is False
        assert result.failed_stage == Stage.VALIDATING
        assert result.message == "Validation failed (1 error(s))"
        assert result.converted["creatures"]["level"] == 5
        assert [e.path for e in result.validation_errors] == ["level"]
        assert result.integration is None

    @pytest.mark.anyio
    async def test_cosmetic_panoply_is_refused(self, settings, fake_source):
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client).run_one_with_raw(
                "dofusdb", "panoply", {"id": 1, "isCosmetic": True},
            )
        assert result.success is False
        assert "Cosmetic panoply" in result.message
        assert result.converted is None

    @pytest.mark.anyio
    async def test_raw_only(self, settings, fake_source, bouftou):
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client).run_one_with_raw(
                "dofusdb", "monster", bouftou, RunOptions(convert=False, validate=False, integrate=False),
            )
        assert result.success
        assert result.raw == bouftou
        assert result.converted is None

    @pytest.mark.anyio
    async def test_recipe_enrichment(self, settings, fake_source):
        source = fake_source({"/recipes": {"total": 1, "data": [{"resultId": 44, "ingredientIds": [1, 2], "quantities": [3, 4]}]}})
        raw = {"id": 44, "name": {"fr": "Épée"}, "level": 10, "typeId": 6, "hasRecipe": True}
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client).run_one_with_raw("dofusdb", "item", raw)
        assert result.success
        assert result.raw["recipe"]["ingredientIds"] == [1, 2]
        assert result.converted["items"]["recipe"] == [
            {"ingredient_dofusdb_id": "1", "quantity": 3},
            {"ingredient_dofusdb_id": "2", "quantity": 4},
        ]

    @pytest.mark.anyio
    async def test_no_recipe_lookup_without_flag(self, settings, fake_source):
        source = fake_source({})
        async with SourceClient(settings, source.transport) as client:
            await build_orchestrator(settings, client).run_one_with_raw(
                "dofusdb", "item", {"id": 44, "name": {"fr": "Épée"}, "level": 10},
            )
        assert source.requests == []


# ==============================================================================
# Integration and discovery
# ==============================================================================

class TestIntegrate:
    """Persisting records and recording discovered codes."""

    @pytest.mark.anyio
    async def test_integrate_creates_then_skips(self, settings, fake_source, registry, bouftou):
        async with SourceClient(settings, fake_source({}).transport) as client:
            orchestrator = build_orchestrator(settings, client, registry)
            first = await orchestrator.run_one_with_raw("dofusdb", "monster", bouftou, RunOptions.from_flags(integrate=True))
            second = await orchestrator.run_one_with_raw("dofusdb", "monster", bouftou, RunOptions.from_flags(integrate=True))
        assert first.success
        assert first.integration.action == "created"
        assert second.integration.action == "skipped"
        assert (settings.records_dir / "monster.json").exists()
        race = registry.get("monster_races", 1)
        assert race.decision == Decision.PENDING
        assert race.seen_count == 2

    @pytest.mark.anyio
    async def test_dry_run(self, settings, fake_source, registry, bouftou):
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client, registry).run_one_with_raw(
                "dofusdb", "monster", bouftou, RunOptions.from_flags(dry_run=True),
            )
        assert result.success
        assert result.integration.action == "would_create"
        assert not (settings.records_dir / "monster.json").exists()
        assert registry.get("monster_races", 1) is None

    @pytest.mark.anyio
    async def test_catalog_entity_is_not_persisted(self, settings, fake_source, registry):
        async with SourceClient(settings, fake_source({}).transport) as client:
            result = await build_orchestrator(settings, client, registry).run_one_with_raw(
                "dofusdb", "monster-race", {"id": 1, "name": {"fr": "Bouftous"}}, RunOptions.from_flags(integrate=True),
            )
        assert result.success
        assert result.message == "Catalog entity, nothing persisted"
        assert result.converted["monster_races"]["name"] == "Bouftous"
        assert result.integration is None
        assert not settings.records_dir.exists()

    @pytest.mark.anyio
    async def test_resource_needs_an_allowed_type(self, settings, fake_source, registry):
        """A pending resource type blocks integration until moderation allows it."""
        options = RunOptions.from_flags(integrate=True)
        async with SourceClient(settings, fake_source({}).transport) as client:
            orchestrator = build_orchestrator(settings, client, registry)
            refused = await orchestrator.run_one_with_raw("dofusdb", "resource", WOOD, options)
            ModerationService(registry).bulk_update_decision("resource_types", [15], "used")
            accepted = await orchestrator.run_one_with_raw("dofusdb", "resource", WOOD, options)

        assert refused.success is False
        assert refused.failed_stage == Stage.INTEGRATING
        assert refused.message == "resource_types code 15 is pending"
        assert refused.integration is None
        assert registry.get("resource_types", 15).name == "Bois"

        assert accepted.success
        assert accepted.integration.action == "created"
        assert registry.get("resource_types", 15).seen_count == 2

    @pytest.mark.anyio
    async def test_missing_sink(self, settings, fake_source, bouftou):
        async with SourceClient(settings, fake_source({}).transport) as client:
            orchestrator = build_orchestrator(settings, client)
            orchestrator.sink = None
            result = await orchestrator.run_one_with_raw("dofusdb", "monster", bouftou, RunOptions.from_flags(integrate=True))
        assert result.failed_stage == Stage.INTEGRATING
        assert result.message == "No record sink configured"


# ==============================================================================
# Batch
# ==============================================================================

class TestRunMany:
    """Filtered batches."""

    @pytest.mark.anyio
    async def test_collect_only(self, settings, fake_source):
        source = fake_source({"/monsters": paged([monster(31, 50), monster(32, 60)])})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client).run_many(
                "dofusdb", "monster", options=RunOptions(convert=False, validate=False, integrate=False),
            )
        assert result.success
        assert [item["id"] for item in result.items] == [31, 32]
        assert result.message == "2 item(s) collected (offset=0, limit=all, total API: 2)"
        assert result.summary is None

    @pytest.mark.anyio
    async def test_item_errors_do_not_stop_the_batch(self, settings, fake_source):
        source = fake_source({"/monsters": paged([monster(31, 50), monster(32, 200), monster(33, 40)])})
        async with SourceClient(settings, source.transport) as client:
            orchestrator = build_orchestrator(settings, client)
            orchestrator.validator = strict_validator(max_level=5)
            result = await orchestrator.run_many("dofusdb", "monster")

        assert result.success is False
        assert result.message.endswith("1 failed")
        assert len(result.items) == 3
        assert result.summary.requested == 3
        assert result.summary.updated == 2
        assert [e.id for e in result.errors] == [32]
        assert [e.path for e in result.validation_errors] == ["item#1.level"]


    @pytest.mark.anyio
    async def test_non_finite_value_fails_only_its_item(self, settings, fake_source):
        broken = monster(32, 50)
        broken["grades"][0]["strength"] = "inf"
        source = fake_source({"/monsters": paged([monster(31, 50), broken])})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client).run_many("dofusdb", "monster")

        assert result.success is False
        assert [e.id for e in result.errors] == [32]
        assert "finite number" in result.errors[0].error
        assert result.summary.updated == 1
        assert len(result.items) == 1
    @pytest.mark.anyio
    async def test_batch_integration(self, settings, fake_source, registry):
        source = fake_source({"/monsters": paged([monster(31, 50), monster(32, 60)])})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client, registry).run_many(
                "dofusdb", "monster", {"raceIds": [1]}, RunOptions.from_flags(integrate=True),
            )
        assert result.success
        assert [r.action for r in result.integrations] == ["created", "created"]
        assert result.summary.updated == 2
        assert registry.get("monster_races", 1).seen_count == 1

    @pytest.mark.anyio
    async def test_batch_refusals_are_item_errors(self, settings, fake_source, registry):
        other = {**WOOD, "id": 101, "typeId": 16}
        registry.touch_many("resource_types", [16])
        ModerationService(registry).bulk_update_decision("resource_types", [16], "allowed")
        source = fake_source({"/items": paged([WOOD, other])})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client, registry).run_many(
                "dofusdb", "resource", options=RunOptions.from_flags(integrate=True),
            )
        assert result.success is False
        assert [(e.id, e.error) for e in result.errors] == [(100, "resource_types code 15 is pending")]
        assert [r.record_id for r in result.integrations] == ["101"]

    @pytest.mark.anyio
    async def test_collect_failure(self, settings, fake_source):
        source = fake_source({"/monsters": lambda request: httpx.Response(500)})
        async with SourceClient(settings, source.transport) as client:
            result = await build_orchestrator(settings, client).run_many("dofusdb", "monster")
        assert result.success is False
        assert result.failed_stage == Stage.COLLECTING
        assert len(source.requests) == settings.max_retries
