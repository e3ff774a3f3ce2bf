"""
Loading of source and entity configuration files.

Layout::

    <base_dir>/sources/<source>/source.json
    <base_dir>/sources/<source>/entities/<entity>.json

YAML (``.yaml``/``.yml``) files are accepted where no JSON file exists.
Files are read on every call; there is no cache.
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..base import ConfigError
from .models import EntityConfig, SourceConfig


logger = logging.getLogger("krosmoz-import.config")

SUPPORTED_EXTENSIONS = [".json", ".yaml", ".yml"]


class ConfigRegistry:
    """Reads and validates declarative import configuration."""

    def __init__(self, base_dir: Path, formatters=None):
        """
        Args:
            base_dir: Directory containing ``sources/``
            formatters: Optional FormatterRegistry; when given, every formatter
                named by an entity mapping must be supported
        """
        self.base_dir = Path(base_dir)
        self.formatters = formatters

    def source_dir(self, source_id: str) -> Path:
        return self.base_dir / "sources" / source_id

    def load_source(self, source_id: str) -> SourceConfig:
        """Load ``sources/<source_id>/source.json``.

        Raises:
            ConfigError: If the file is missing, malformed or names another source
        """
        path = self._find(self.source_dir(source_id), "source")
        data = self._read(path)
        if data.get("source") != source_id:
            raise ConfigError(f"{path}: 'source' is {data.get('source')!r}, expected {source_id!r}")
        try:
            return SourceConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid source config {path}: {e}") from None

    def load_entity(self, source_id: str, entity_id: str) -> EntityConfig:
        """Load ``sources/<source_id>/entities/<entity_id>.json``.

        Raises:
            ConfigError: If the file is missing or malformed, names another
                source or entity, or uses an unknown formatter
        """
        path = self._find(self.source_dir(source_id) / "entities", entity_id)
        data = self._read(path)
        if data.get("source") != source_id:
            raise ConfigError(f"{path}: 'source' is {data.get('source')!r}, expected {source_id!r}")
        if data.get("entity") != entity_id:
            raise ConfigError(f"{path}: 'entity' is {data.get('entity')!r}, expected {entity_id!r}")
        if not isinstance(data.get("endpoints"), dict):
            raise ConfigError(f"{path}: missing 'endpoints'")
        if not isinstance(data.get("mapping"), list):
            raise ConfigError(f"{path}: 'mapping' must be a list")

        try:
            config = EntityConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid entity config {path}: {e}") from None

        if self.formatters is not None:
            unknown = sorted(n for n in config.formatter_names() if not self.formatters.supports(n))
            if unknown:
                raise ConfigError(f"{path}: unknown formatter(s): {', '.join(unknown)}")

        logger.debug(f"Loaded entity config {source_id}/{entity_id} ({len(config.mapping)} mappings)")
        return config

    def list_entities(self, source_id: str) -> list[str]:
        """Entity ids configured for a source, sorted."""
        directory = self.source_dir(source_id) / "entities"
        if not directory.is_dir():
            return []
        return sorted({p.stem for p in directory.iterdir() if p.suffix in SUPPORTED_EXTENSIONS})

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _find(directory: Path, stem: str) -> Path:
        for ext in SUPPORTED_EXTENSIONS:
            candidate = directory / f"{stem}{ext}"
            if candidate.exists():
                return candidate
        raise ConfigError(f"Config file not found: {directory / (stem + '.json')}")

    def _read(self, path: Path) -> dict[str, Any]:
        data = self._parse(path)
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: expected an object at top level")
        if not isinstance(data.get("version"), int) or isinstance(data.get("version"), bool):
            raise ConfigError(f"{path}: 'version' must be an integer")
        return data

    @staticmethod
    def _parse(path: Path) -> Any:
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Cannot read {path}: {e}") from None
        try:
            if path.suffix == ".json":
                return json.loads(text)
            return yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigError(f"Invalid {path.suffix[1:].upper()} in {path}: {e}") from None
