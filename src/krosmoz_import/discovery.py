"""
Registry of classification codes discovered in imported data.

Every code seen during an import (item type, resource type, consumable type,
monster race) gets a row holding a moderation decision and a sighting count.
The pipeline only inserts rows and counts sightings; decisions are written
by moderation (``ModerationService``).

Sightings are recorded with two ordered statements in one transaction:
an insert of every requested code that ignores conflicts, then one bulk
increment of all requested rows. Concurrency is left to the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, Field
from sqlalchemy import DateTime, Engine, Integer, String, create_engine, select, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .base import BatchSummary, IntegrationError


logger = logging.getLogger("krosmoz-import.discovery")


class Decision(str, Enum):
    """Moderation state of a classification code."""
    PENDING = "pending"
    ALLOWED = "allowed"
    BLOCKED = "blocked"


DECISION_ALIASES = {
    "used": Decision.ALLOWED,
    "unused": Decision.BLOCKED,
}


def normalize_decision(value: str | Decision) -> Decision:
    """Map a decision or one of its aliases to a Decision.

    Raises:
        ValueError: If the value is not a known decision
    """
    if isinstance(value, Decision):
        return value
    key = str(value).strip().lower()
    if key in DECISION_ALIASES:
        return DECISION_ALIASES[key]
    return Decision(key)


# =========================================================================
# ORM models
# =========================================================================

class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""
    pass


class _TypeRegistryColumns:
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dofusdb_type_id: Mapped[int] = mapped_column(Integer, unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[str] = mapped_column(String(16), default=Decision.PENDING.value, nullable=False)
    seen_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    usable: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_visible: Mapped[str] = mapped_column(String(32), default="guest", nullable=False)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)


class ItemType(_TypeRegistryColumns, Base):
    __tablename__ = "item_types"


class ResourceType(_TypeRegistryColumns, Base):
    __tablename__ = "resource_types"


class ConsumableType(_TypeRegistryColumns, Base):
    __tablename__ = "consumable_types"


class MonsterRace(Base):
    __tablename__ = "monster_races"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    dofusdb_race_id: Mapped[int] = mapped_column(Integer, unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    decision: Mapped[str] = mapped_column(String(16), default=Decision.PENDING.value, nullable=False)
    seen_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state: Mapped[str] = mapped_column(String(32), default="draft", nullable=False)
    read_level: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_level: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)


@dataclass(frozen=True)
class RegistrySpec:
    """How one registry table stores codes and fills new rows."""
    model: type
    code_column: str
    placeholder: str
    defaults: dict[str, Any] = field(default_factory=dict)

    @property
    def code(self):
        return getattr(self.model, self.code_column)


REGISTRIES: dict[str, RegistrySpec] = {
    "item_types": RegistrySpec(ItemType, "dofusdb_type_id", "DofusDB type #{code}",
                               {"usable": 0, "is_visible": "guest"}),
    "resource_types": RegistrySpec(ResourceType, "dofusdb_type_id", "DofusDB type #{code}",
                                   {"usable": 0, "is_visible": "guest"}),
    "consumable_types": RegistrySpec(ConsumableType, "dofusdb_type_id", "DofusDB type #{code}",
                                     {"usable": 0, "is_visible": "guest"}),
    "monster_races": RegistrySpec(MonsterRace, "dofusdb_race_id", "DofusDB race #{code}",
                                  {"state": "draft", "read_level": 0, "write_level": 3}),
}


class DiscoveryRecord(BaseModel):
    """Read-only view of one registry row."""

    code: int = Field(description="Classification code from the source")
    name: str
    decision: Decision = Decision.PENDING
    seen_count: int = Field(default=0, ge=0)
    last_seen_at: datetime | None = None


def _parse_code(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        number = int(value.strip())
        return number if number > 0 else None
    return None


# =========================================================================
# Registry
# =========================================================================

class DiscoveryRegistry:
    """Records sightings of classification codes and exposes their decisions."""

    def __init__(self, engine: Engine, system_user_id: int | None = None):
        """
        Args:
            engine: SQLAlchemy engine (SQLite, PostgreSQL or MySQL)
            system_user_id: Value stored in ``created_by`` for rows the pipeline creates
        """
        self.engine = engine
        self.system_user_id = system_user_id

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = True, **kwargs) -> "DiscoveryRegistry":
        registry = cls(create_engine(database_url), **kwargs)
        if create_schema:
            registry.create_schema()
        return registry

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @staticmethod
    def spec(table: str) -> RegistrySpec:
        try:
            return REGISTRIES[table]
        except KeyError:
            raise IntegrationError(f"Unknown discovery registry '{table}'") from None

    def touch_many(self, table: str, codes: Iterable[Any], labels: dict[int, str] | None = None) -> BatchSummary:
        """Record one sighting of each code.

        Unknown codes are inserted as ``pending`` with a placeholder name (or
        the given label); every requested row then gets ``seen_count + 1``
        and ``last_seen_at = now``. Duplicates in ``codes`` count once.

        Returns:
            BatchSummary; invalid codes (non-positive, non-integer) are listed as errors

        Raises:
            IntegrationError: If the database rejects the statements
        """
        spec = self.spec(table)
        codes = list(codes)
        summary = BatchSummary(requested=len(codes))

        valid: list[int] = []
        for raw_code in codes:
            code = _parse_code(raw_code)
            if code is None:
                summary.add_error(raw_code, "invalid classification code")
            elif code not in valid:
                valid.append(code)
        if not valid:
            return summary

        labels = labels or {}
        now = datetime.now(timezone.utc)
        rows = [
            {
                spec.code_column: code,
                "name": labels.get(code) or spec.placeholder.format(code=code),
                "decision": Decision.PENDING.value,
                "seen_count": 0,
                "created_by": self.system_user_id,
                **spec.defaults,
            }
            for code in valid
        ]

        try:
            with self.engine.begin() as conn:
                conn.execute(self._insert_ignoring_conflicts(spec, rows))
                conn.execute(
                    update(spec.model)
                    .where(spec.code.in_(valid))
                    .values(seen_count=spec.model.seen_count + 1, last_seen_at=now)
                )
        except SQLAlchemyError as e:
            raise IntegrationError(f"Failed to record {table} sightings: {e}") from e

        summary.updated = len(valid)
        logger.debug(f"Touched {len(valid)} code(s) in {table}")
        return summary

    def _insert_ignoring_conflicts(self, spec: RegistrySpec, rows: list[dict[str, Any]]):
        dialect = self.engine.dialect.name
        if dialect == "sqlite":
            return sqlite.insert(spec.model).values(rows).on_conflict_do_nothing(index_elements=[spec.code_column])
        if dialect == "postgresql":
            return postgresql.insert(spec.model).values(rows).on_conflict_do_nothing(index_elements=[spec.code_column])
        if dialect in ("mysql", "mariadb"):
            return mysql.insert(spec.model).values(rows).prefix_with("IGNORE")
        raise IntegrationError(f"Unsupported database dialect for discovery upserts: {dialect}")

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, table: str, code: int) -> DiscoveryRecord | None:
        records = self.list_records(table, codes=[code])
        return records[0] if records else None

    def list_records(
        self,
        table: str,
        codes: Iterable[int] | None = None,
        decision: Decision | None = None,
    ) -> list[DiscoveryRecord]:
        spec = self.spec(table)
        stmt = select(spec.model).order_by(spec.code)
        if codes is not None:
            stmt = stmt.where(spec.code.in_(list(codes)))
        if decision is not None:
            stmt = stmt.where(spec.model.decision == normalize_decision(decision).value)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            DiscoveryRecord(
                code=row[spec.code_column],
                name=row["name"],
                decision=row["decision"],
                seen_count=row["seen_count"],
                last_seen_at=row["last_seen_at"],
            )
            for row in rows
        ]

    def decisions(self, table: str, codes: Iterable[int]) -> dict[int, Decision]:
        return {r.code: r.decision for r in self.list_records(table, codes=codes)}

    def allowed_codes(self, table: str) -> set[int]:
        return {r.code for r in self.list_records(table, decision=Decision.ALLOWED)}


class ModerationService:
    """Writes moderation decisions; the import pipeline never calls it."""

    def __init__(self, registry: DiscoveryRegistry):
        self.registry = registry

    def bulk_update_decision(self, table: str, codes: Iterable[Any], decision: str | Decision) -> BatchSummary:
        """Set the decision of several codes.

        Accepts the aliases ``used`` (allowed) and ``unused`` (blocked).
        Unknown codes are reported per item without aborting the batch.

        Raises:
            ValueError: If the decision is not recognised
        """
        target = normalize_decision(decision)
        spec = self.registry.spec(table)
        codes = list(codes)
        summary = BatchSummary(requested=len(codes))

        for raw_code in codes:
            code = _parse_code(raw_code)
            if code is None:
                summary.add_error(raw_code, "invalid classification code")
                continue
            try:
                with self.registry.engine.begin() as conn:
                    result = conn.execute(
                        update(spec.model).where(spec.code == code).values(decision=target.value)
                    )
            except SQLAlchemyError as e:
                summary.add_error(code, str(e))
                continue
            if result.rowcount:
                summary.updated += 1
            else:
                summary.add_error(code, "code not registered")

        logger.info(f"Moderation: {summary.updated}/{summary.requested} {table} code(s) set to {target.value}")
        return summary
