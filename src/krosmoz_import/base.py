"""
Base models and exceptions for the import pipeline.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class KrosmozImportError(Exception):
    """Base class for every failure raised by the import pipeline."""


class ConfigError(KrosmozImportError):
    """Raised when a source or entity configuration is missing or malformed.

    Fatal: the pipeline aborts before any network call is made.
    """


class FetchError(KrosmozImportError):
    """Raised when a request to the external source fails.

    Always carries the HTTP status (``None`` for network failures)
    and the URL that was requested.
    """

    def __init__(self, message: str, status: int | None = None, url: str = ""):
        super().__init__(message)
        self.status = status
        self.url = url


class ConversionError(KrosmozImportError):
    """Raised when a formatter or a formula evaluation fails."""


class IntegrationError(KrosmozImportError):
    """Raised by a persistence collaborator when a record cannot be stored."""


class ValidationIssue(BaseModel):
    """A single violation found while validating a converted record."""

    path: str = Field(description="Characteristic id, field name or model.field path")
    message: str = Field(description="Human-readable violation message")


class ValidationResult(BaseModel):
    """Outcome of validating one converted record.

    ``valid`` is true exactly when ``errors`` is empty.
    """

    valid: bool = Field(default=True, description="True when no violation was found")
    errors: list[ValidationIssue] = Field(default_factory=list, description="All violations, never short-circuited")

    @classmethod
    def from_errors(cls, errors: list[ValidationIssue]) -> "ValidationResult":
        return cls(valid=not errors, errors=errors)

    def prefixed(self, prefix: str) -> list[ValidationIssue]:
        """Return the errors with ``prefix`` prepended to each path."""
        return [ValidationIssue(path=f"{prefix}.{e.path}", message=e.message) for e in self.errors]


class ItemError(BaseModel):
    """An item-level failure recorded by a batch operation."""

    id: Any = Field(description="Identifier of the failing item")
    error: str = Field(description="Failure message")


class BatchSummary(BaseModel):
    """Uniform summary returned by every batch operation."""

    requested: int = Field(default=0, ge=0, description="Number of items requested")
    updated: int = Field(default=0, ge=0, description="Number of items that went through")
    errors: list[ItemError] = Field(default_factory=list, description="Per-item failures")

    def add_error(self, item_id: Any, error: str) -> None:
        self.errors.append(ItemError(id=item_id, error=error))

    @property
    def error_count(self) -> int:
        return len(self.errors)
