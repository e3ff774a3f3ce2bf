"""
Import pipeline: collect, convert, validate, integrate.

One invocation handles one record (``run_one``/``run_one_with_raw``) or one
filtered batch (``run_many``). Failures are reported in the result with the
output of the furthest stage reached; batches never stop on a single item.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .base import (
    BatchSummary,
    IntegrationError,
    ItemError,
    KrosmozImportError,
    ValidationIssue,
)
from .collect import Collector
from .collect.collector import config_entity
from .config import ConfigRegistry, EntityConfig
from .conversion import ConversionContext, FieldMapper, resolve_path
from .conversion.formatters import pick_lang
from .discovery import Decision, DiscoveryRegistry
from .integration import IntegrationOptions, IntegrationResult, RecordSink
from .validation import ValidationEngine


logger = logging.getLogger("krosmoz-import.orchestrator")


class Stage(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    CONVERTING = "converting"
    VALIDATING = "validating"
    INTEGRATING = "integrating"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RunOptions:
    """What a run should do.

    With ``convert``, ``validate`` and ``integrate`` all off, a run only
    collects and returns the raw data.
    """
    convert: bool = True
    validate: bool = True
    integrate: bool = False
    dry_run: bool = False
    force_update: bool = False
    skip_cache: bool = False
    lang: str | None = None
    limit: int = 0
    offset: int = 0
    page_size: int = 50
    exclude_from_update: list[str] = field(default_factory=list)

    @classmethod
    def from_flags(
        cls,
        skip_cache: bool = False,
        force_update: bool = False,
        dry_run: bool = False,
        validate_only: bool = False,
        integrate: bool = False,
        **kwargs,
    ) -> "RunOptions":
        """Build options from trigger flags.

        Records are converted and validated; they are integrated only with
        ``integrate`` (or ``dry_run``) and never with ``validate_only``.
        """
        return cls(
            convert=True,
            validate=True,
            integrate=(integrate or dry_run) and not validate_only,
            dry_run=dry_run,
            force_update=force_update,
            skip_cache=skip_cache,
            **kwargs,
        )

    @property
    def processes(self) -> bool:
        return self.convert or self.validate or self.integrate

    def integration_options(self) -> IntegrationOptions:
        return IntegrationOptions(
            dry_run=self.dry_run,
            force_update=self.force_update,
            exclude_from_update=self.exclude_from_update,
        )


@dataclass
class OrchestratorResult:
    """Outcome of a run, with whatever output was produced before it stopped."""
    success: bool = False
    stage: Stage = Stage.IDLE
    message: str = ""
    failed_stage: Stage | None = None
    raw: dict[str, Any] | None = None
    converted: dict[str, dict[str, Any]] | None = None
    validation_errors: list[ValidationIssue] = field(default_factory=list)
    integration: IntegrationResult | None = None
    items: list[Any] | None = None
    integrations: list[IntegrationResult] = field(default_factory=list)
    meta: dict[str, Any] | None = None
    summary: BatchSummary | None = None

    @property
    def errors(self) -> list[ItemError]:
        return self.summary.errors if self.summary else []

    def advance(self, stage: Stage) -> None:
        self.stage = stage
        logger.debug(f"Stage: {stage.value}")

    def fail(self, message: str) -> "OrchestratorResult":
        self.success = False
        self.failed_stage = self.stage
        self.stage = Stage.FAILED
        self.message = message
        logger.warning(f"Import failed while {self.failed_stage.value}: {message}")
        return self

    def succeed(self, message: str = "OK") -> "OrchestratorResult":
        self.success = True
        self.stage = Stage.SUCCEEDED
        self.message = message
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "message": self.message,
            "raw": self.raw,
            "converted": self.converted,
            "validation_errors": [e.model_dump() for e in self.validation_errors],
            "integration": self.integration.model_dump() if self.integration else None,
            "items": self.items,
            "integrations": [r.model_dump() for r in self.integrations],
            "meta": self.meta,
            "errors": [e.model_dump() for e in self.errors],
            "summary": self.summary.model_dump() if self.summary else None,
        }


class Orchestrator:
    """Runs the import pipeline for configured entities."""

    def __init__(
        self,
        config: ConfigRegistry,
        collector: Collector,
        mapper: FieldMapper,
        validator: ValidationEngine,
        sink: RecordSink | None = None,
        registry: DiscoveryRegistry | None = None,
    ):
        self.config = config
        self.collector = collector
        self.mapper = mapper
        self.validator = validator
        self.sink = sink
        self.registry = registry

    # =========================================================================
    # Single record
    # =========================================================================

    async def run_one(self, source: str, entity: str, record_id: int, options: RunOptions | None = None) -> OrchestratorResult:
        """Collect one record by id and run it through the pipeline."""
        options = options or RunOptions()
        result = OrchestratorResult()
        result.advance(Stage.COLLECTING)
        try:
            raw = await self.collector.fetch_one(
                source, entity, record_id, skip_cache=options.skip_cache, lang=options.lang,
            )
        except KrosmozImportError as e:
            return result.fail(str(e))
        if not raw:
            return result.fail(f"No data collected for {source}/{entity}/{record_id}")
        return await self._process(source, entity, raw, options, result)

    async def run_one_with_raw(self, source: str, entity: str, raw: dict[str, Any], options: RunOptions | None = None) -> OrchestratorResult:
        """Run an already collected raw record through the pipeline."""
        return await self._process(source, entity, raw, options or RunOptions(), OrchestratorResult())

    async def _process(
        self,
        source: str,
        entity: str,
        raw: dict[str, Any],
        options: RunOptions,
        result: OrchestratorResult,
    ) -> OrchestratorResult:
        result.raw = raw
        if self._is_cosmetic_panoply(entity, raw):
            return result.fail("Cosmetic panoply: only panoplies with bonuses can be imported")
        if not options.processes:
            return result.succeed()

        try:
            result.advance(Stage.CONVERTING)
            entity_config = self.config.load_entity(source, config_entity(entity))
            options = self._with_lang(source, options)
            raw = await self._enrich_with_recipe(source, entity_config, raw, options)
            result.raw = raw
            context = self._context(entity_config, options)
            result.converted = self.mapper.map(raw, entity_config, context)

            if options.validate:
                result.advance(Stage.VALIDATING)
                validation = self.validator.validate(result.converted, context.entity_type)
                if not validation.valid:
                    result.validation_errors = validation.errors
                    return result.fail(f"Validation failed ({len(validation.errors)} error(s))")

            if options.integrate:
                result.advance(Stage.INTEGRATING)
                if entity_config.meta.catalog_only:
                    return result.succeed("Catalog entity, nothing persisted")
                refused = self._discover(entity_config, [raw], options)
                if refused:
                    return result.fail(refused[0][1])
                result.integration = self._integrate(context.entity_type, result.converted, options)
        except KrosmozImportError as e:
            return result.fail(str(e))

        return result.succeed()

    # =========================================================================
    # Batch
    # =========================================================================

    async def run_many(
        self,
        source: str,
        entity: str,
        filters: dict[str, Any] | None = None,
        options: RunOptions | None = None,
    ) -> OrchestratorResult:
        """Collect a filtered batch and run every item through the pipeline.

        Item failures are recorded as ``{id, error}`` in the summary and the
        batch goes on; validation errors are reported with an ``item#<n>.``
        path prefix.
        """
        options = options or RunOptions()
        result = OrchestratorResult()
        result.advance(Stage.COLLECTING)
        try:
            collected = await self.collector.fetch_many(
                source,
                entity,
                filters,
                limit=options.limit,
                offset=options.offset,
                page_size=options.page_size,
                skip_cache=options.skip_cache,
                lang=options.lang,
            )
            entity_config = self.config.load_entity(source, config_entity(entity))
            options = self._with_lang(source, options)
        except KrosmozImportError as e:
            return result.fail(str(e))

        items = collected.items
        result.meta = collected.meta
        if not options.processes:
            result.items = items
            return result.succeed(self._batch_message("collected", collected.meta))

        context = self._context(entity_config, options)
        summary = BatchSummary(requested=len(items))
        result.summary = summary
        converted_items: list[dict[str, Any]] = []
        ready: list[tuple[int, dict[str, Any], dict[str, Any]]] = []

        result.advance(Stage.CONVERTING)
        for index, raw in enumerate(items):
            item_id = raw.get("id", index) if isinstance(raw, dict) else index
            if self._is_cosmetic_panoply(entity, raw):
                summary.add_error(item_id, "cosmetic panoply")
                continue
            try:
                raw = await self._enrich_with_recipe(source, entity_config, raw, options)
                converted = self.mapper.map(raw, entity_config, context)
            except KrosmozImportError as e:
                summary.add_error(item_id, str(e))
                continue
            converted_items.append(converted)

            if options.validate:
                validation = self.validator.validate(converted, context.entity_type)
                if not validation.valid:
                    result.validation_errors.extend(validation.prefixed(f"item#{index}"))
                    summary.add_error(item_id, f"validation failed ({len(validation.errors)} error(s))")
                    continue
            ready.append((index, raw, converted))
        result.items = converted_items

        if options.integrate and not entity_config.meta.catalog_only:
            result.advance(Stage.INTEGRATING)
            try:
                refused = dict(self._discover(entity_config, [raw for _, raw, _ in ready], options))
            except KrosmozImportError as e:
                return result.fail(str(e))

            for position, (index, raw, converted) in enumerate(ready):
                item_id = raw.get("id", index)
                if position in refused:
                    summary.add_error(item_id, refused[position])
                    continue
                try:
                    result.integrations.append(self._integrate(context.entity_type, converted, options))
                except KrosmozImportError as e:
                    summary.add_error(item_id, str(e))
                    continue
                summary.updated += 1
        else:
            summary.updated = len(ready)

        message = self._batch_message("processed", collected.meta)
        if summary.errors:
            return result.fail(f"{message}, {summary.error_count} failed")
        logger.info(message)
        return result.succeed(message)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _with_lang(self, source: str, options: RunOptions) -> RunOptions:
        """Options with ``lang`` defaulting to the source language."""
        if options.lang:
            return options
        return replace(options, lang=self.config.load_source(source).default_language)

    @staticmethod
    def _context(entity_config: EntityConfig, options: RunOptions) -> ConversionContext:
        return ConversionContext(entity_type=entity_config.target_entity, lang=options.lang)

    @staticmethod
    def _is_cosmetic_panoply(entity: str, raw: Any) -> bool:
        return entity == "panoply" and isinstance(raw, dict) and raw.get("isCosmetic") is True

    @staticmethod
    def _batch_message(verb: str, meta: dict[str, Any]) -> str:
        limit = meta.get("limit") or 0
        return (
            f"{meta.get('collected', 0)} item(s) {verb} "
            f"(offset={meta.get('offset', 0)}, limit={'all' if limit == 0 else limit}, "
            f"total API: {meta.get('total', 0)})"
        )

    async def _enrich_with_recipe(self, source: str, entity_config: EntityConfig, raw: dict[str, Any], options: RunOptions) -> dict[str, Any]:
        if not entity_config.meta.with_recipe or "recipe" in raw:
            return raw
        if not raw.get("hasRecipe") and not raw.get("recipeIds"):
            return raw
        result_id = raw.get("id")
        if not isinstance(result_id, int) or isinstance(result_id, bool) or result_id <= 0:
            return raw
        recipe = await self.collector.fetch_recipe(source, result_id, skip_cache=options.skip_cache, lang=options.lang)
        if recipe is None:
            return raw
        return {**raw, "recipe": recipe}

    def _integrate(self, entity_type: str, converted: dict[str, dict[str, Any]], options: RunOptions) -> IntegrationResult:
        if self.sink is None:
            raise IntegrationError("No record sink configured")
        return self.sink.integrate(entity_type, converted, options.integration_options())

    def _discover(self, entity_config: EntityConfig, raws: list[dict[str, Any]], options: RunOptions) -> list[tuple[int, str]]:
        """Record sightings of classification codes and apply ``requireAllowed``.

        Sightings are only recorded outside dry runs, with one ``touch_many``
        per registry.

        Returns:
            ``(position, reason)`` for each record refused by a registry decision
        """
        if self.registry is None or not entity_config.meta.discovery:
            return []

        refused: dict[int, str] = {}
        for target in entity_config.meta.discovery:
            codes: dict[int, int] = {}
            labels: dict[int, str] = {}
            for position, raw in enumerate(raws):
                code = resolve_path(raw, target.path)
                if isinstance(code, bool) or not isinstance(code, int) or code <= 0:
                    continue
                codes[position] = code
                if target.label_path:
                    label = pick_lang(resolve_path(raw, target.label_path), options.lang)
                    if label:
                        labels[code] = label
            if not codes:
                continue

            if not options.dry_run:
                self.registry.touch_many(target.registry, sorted(set(codes.values())), labels)

            if target.require_allowed:
                decisions = self.registry.decisions(target.registry, set(codes.values()))
                for position, code in codes.items():
                    decision = decisions.get(code, Decision.PENDING)
                    if decision != Decision.ALLOWED and position not in refused:
                        refused[position] = f"{target.registry} code {code} is {decision.value}"
        return sorted(refused.items())
