"""
Console trigger for the import pipeline.

Usage examples::

    krosmoz-import run monster 31
    krosmoz-import run-many item --type-ids 15,16 --limit 20 --integrate
    krosmoz-import entities
    krosmoz-import validate-formula "floor([d]/10)"
    krosmoz-import moderate item_types allowed 15 16
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from .base import KrosmozImportError
from .characteristics import CharacteristicRepository
from .collect import Collector, SourceClient
from .config import ConfigRegistry
from .conversion import ConversionFormulaRepository, ConversionFormulas, FieldMapper, FormatterRegistry
from .discovery import DiscoveryRegistry, ModerationService
from .formula import FormulaEngine
from .integration import JsonRecordStore
from .orchestrator import Orchestrator, RunOptions
from .settings import ImportSettings
from .validation import ValidationEngine


logger = logging.getLogger("krosmoz-import")

CHARACTERISTICS_FILE = "characteristics.yaml"
FORMULAS_FILE = "conversion_formulas.yaml"


def build_conversion(settings: ImportSettings) -> ConversionFormulas:
    characteristics = CharacteristicRepository.load(settings.resources_dir / CHARACTERISTICS_FILE)
    formulas = ConversionFormulaRepository.load(settings.resources_dir / FORMULAS_FILE)
    return ConversionFormulas(characteristics, formulas)


def build_orchestrator(
    settings: ImportSettings,
    client: SourceClient,
    registry: DiscoveryRegistry | None = None,
) -> Orchestrator:
    """Wire the pipeline components from settings."""
    conversion = build_conversion(settings)
    formatters = FormatterRegistry(conversion)
    config = ConfigRegistry(settings.resources_dir, formatters)
    return Orchestrator(
        config=config,
        collector=Collector(config, client),
        mapper=FieldMapper(formatters),
        validator=ValidationEngine(conversion.characteristics),
        sink=JsonRecordStore(settings.records_dir),
        registry=registry,
    )


def _int_list(value: str) -> list[int]:
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma-separated integers, got {value!r}") from None


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="krosmoz-import",
        description="Import DofusDB data into KrosmozJDR records",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Convert and validate one monster, print the result
  krosmoz-import run monster 31

  # Import every item of two types (writes records)
  krosmoz-import run-many item --type-ids 15,16 --integrate

  # Preview what an import would write
  krosmoz-import run-many monster --race-ids 1 --dry-run
        """,
    )
    parser.add_argument("--source", default="dofusdb", help="Source id (default: dofusdb)")
    parser.add_argument("--lang", default=None, help="Language for localized fields (default: from settings)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    run_flags = argparse.ArgumentParser(add_help=False)
    run_flags.add_argument("--skip-cache", action="store_true", help="Bypass the response cache")
    run_flags.add_argument("--force-update", action="store_true", help="Overwrite records that already exist")
    run_flags.add_argument("--dry-run", action="store_true", help="Show what would be written without writing")
    run_flags.add_argument("--validate-only", action="store_true", help="Convert and validate, never integrate")
    run_flags.add_argument("--integrate", action="store_true", help="Write converted records")

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", parents=[run_flags], help="Import one record by id")
    run.add_argument("entity", help="Entity id (monster, item, spell...)")
    run.add_argument("id", type=int, help="Source id of the record")

    run_many = commands.add_parser("run-many", parents=[run_flags], help="Import a filtered batch")
    run_many.add_argument("entity", help="Entity id (monster, item, spell...)")
    run_many.add_argument("--ids", type=_int_list, help="Comma-separated source ids")
    run_many.add_argument("--name", help="Name search")
    run_many.add_argument("--level-min", type=int, dest="levelMin")
    run_many.add_argument("--level-max", type=int, dest="levelMax")
    run_many.add_argument("--race-ids", type=_int_list, dest="raceIds")
    run_many.add_argument("--type-ids", type=_int_list, dest="typeIds")
    run_many.add_argument("--limit", type=int, default=0, help="Maximum items (default: all)")
    run_many.add_argument("--offset", type=int, default=0)
    run_many.add_argument("--page-size", type=int, default=None)

    commands.add_parser("entities", help="List configured entities")

    formula = commands.add_parser("validate-formula", help="Check a conversion formula")
    formula.add_argument("expression")

    preview = commands.add_parser("preview", help="Sample a characteristic conversion")
    preview.add_argument("characteristic")
    preview.add_argument("--entity", default="monster")
    preview.add_argument("--steps", type=int, default=10)

    moderate = commands.add_parser("moderate", help="Set the decision of discovered codes")
    moderate.add_argument("registry", help="item_types, resource_types, consumable_types or monster_races")
    moderate.add_argument("decision", help="allowed, blocked, pending (or used/unused)")
    moderate.add_argument("codes", nargs="+", type=int)

    return parser.parse_args(argv)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def _run(args: argparse.Namespace, settings: ImportSettings) -> dict[str, Any]:
    options = RunOptions.from_flags(
        skip_cache=args.skip_cache,
        force_update=args.force_update,
        dry_run=args.dry_run,
        validate_only=args.validate_only,
        integrate=args.integrate,
        lang=args.lang or settings.default_lang,
    )
    registry = None
    if options.integrate:
        registry = DiscoveryRegistry.from_url(settings.database_url)

    async with SourceClient(settings) as client:
        orchestrator = build_orchestrator(settings, client, registry)
        if args.command == "run":
            result = await orchestrator.run_one(args.source, args.entity, args.id, options)
        else:
            options.limit = args.limit
            options.offset = args.offset
            options.page_size = args.page_size or settings.page_size
            filters = {
                key: getattr(args, key)
                for key in ("ids", "name", "levelMin", "levelMax", "raceIds", "typeIds")
                if getattr(args, key) is not None
            }
            result = await orchestrator.run_many(args.source, args.entity, filters, options)
    return result.to_dict()


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the import CLI."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    settings = ImportSettings.from_env()
    logger.debug(f"Resources: {settings.resources_dir}")
    try:
        return _dispatch(args, settings)
    except KrosmozImportError as e:
        logger.error(str(e))
        return 2


def _dispatch(args: argparse.Namespace, settings: ImportSettings) -> int:
    if args.command in ("run", "run-many"):
        output = asyncio.run(_run(args, settings))
        _print(output)
        return 0 if output["success"] else 1

    if args.command == "entities":
        _print(ConfigRegistry(settings.resources_dir).list_entities(args.source))
        return 0

    if args.command == "validate-formula":
        errors = FormulaEngine().validate_formula(args.expression)
        _print({"valid": not errors, "errors": errors})
        return 0 if not errors else 1

    if args.command == "preview":
        conversion = build_conversion(settings)
        _print(conversion.preview_points(args.characteristic, args.entity, steps=args.steps))
        return 0

    if args.command == "moderate":
        registry = DiscoveryRegistry.from_url(settings.database_url)
        try:
            summary = ModerationService(registry).bulk_update_decision(args.registry, args.codes, args.decision)
        except ValueError as e:
            logger.error(str(e))
            return 2
        _print(summary.model_dump())
        return 0 if not summary.errors else 1

    return 2


if __name__ == "__main__":
    sys.exit(main())
