"""
Persistence of converted records.

The pipeline hands each validated record to a ``RecordSink``. The bundled
``JsonRecordStore`` keeps one JSON file per entity type, keyed by the
source id of each record (``dofusdb_id``).
"""

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .base import IntegrationError


logger = logging.getLogger("krosmoz-import.integration")

IDENTITY_FIELD = "dofusdb_id"


class IntegrationOptions(BaseModel):
    dry_run: bool = Field(default=False, description="Compute the action without writing")
    force_update: bool = Field(default=False, description="Overwrite records that already exist")
    exclude_from_update: list[str] = Field(
        default_factory=list,
        description="Fields kept from the stored record when updating"
    )


class IntegrationResult(BaseModel):
    """What happened to one record."""

    entity_type: str
    record_id: str
    action: str = Field(description='"created", "updated", "skipped" or "would_create"/"would_update" in dry run')
    data: dict[str, Any] = Field(default_factory=dict, description="Record as stored (or as it would be)")


class RecordSink(Protocol):
    """Persistence collaborator."""

    def integrate(
        self,
        entity_type: str,
        converted: dict[str, dict[str, Any]],
        options: IntegrationOptions,
    ) -> IntegrationResult:
        ...


def record_identity(converted: dict[str, dict[str, Any]]) -> str:
    """Find the source id of a converted record in any model group.

    Raises:
        IntegrationError: If no group carries it
    """
    for fields in converted.values():
        if isinstance(fields, dict) and fields.get(IDENTITY_FIELD) not in (None, ""):
            return str(fields[IDENTITY_FIELD])
    raise IntegrationError(f"Converted record has no '{IDENTITY_FIELD}'")


class JsonRecordStore:
    """Stores converted records as ``<records_dir>/<entity_type>.json``."""

    def __init__(self, records_dir: Path):
        self.records_dir = Path(records_dir)

    def _path(self, entity_type: str) -> Path:
        return self.records_dir / f"{entity_type}.json"

    def load(self, entity_type: str) -> dict[str, dict[str, Any]]:
        path = self._path(entity_type)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise IntegrationError(f"Corrupt record file {path}: {e}") from None
        return data.get("records", {})

    def get(self, entity_type: str, record_id: Any) -> dict[str, Any] | None:
        return self.load(entity_type).get(str(record_id))

    def integrate(
        self,
        entity_type: str,
        converted: dict[str, dict[str, Any]],
        options: IntegrationOptions | None = None,
    ) -> IntegrationResult:
        """Create or update one record.

        Existing records are left untouched unless ``force_update`` is set;
        ``dry_run`` reports the action without writing anything.

        Raises:
            IntegrationError: If the record has no identity or cannot be written
        """
        options = options or IntegrationOptions()
        record_id = record_identity(converted)
        records = self.load(entity_type)
        existing = records.get(record_id)

        if existing is not None and not options.force_update:
            return IntegrationResult(entity_type=entity_type, record_id=record_id, action="skipped", data=existing)

        data = {group: dict(fields) for group, fields in converted.items()}
        if existing is not None:
            for group, fields in data.items():
                for name in options.exclude_from_update:
                    if name in existing.get(group, {}):
                        fields[name] = existing[group][name]

        action = "updated" if existing is not None else "created"
        if options.dry_run:
            return IntegrationResult(entity_type=entity_type, record_id=record_id, action=f"would_{action[:-1]}", data=data)

        records[record_id] = data
        self._save(entity_type, records)
        logger.debug(f"{action.capitalize()} {entity_type} #{record_id}")
        return IntegrationResult(entity_type=entity_type, record_id=record_id, action=action, data=data)

    def _save(self, entity_type: str, records: dict[str, Any]) -> None:
        path = self._path(entity_type)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                json.dumps({"version": "1.0", "records": records}, indent=2, ensure_ascii=False, default=str),
                encoding="utf-8",
            )
        except OSError as e:
            raise IntegrationError(f"Cannot write {path}: {e}") from e


__all__ = [
    "IntegrationOptions",
    "IntegrationResult",
    "JsonRecordStore",
    "RecordSink",
    "record_identity",
]
