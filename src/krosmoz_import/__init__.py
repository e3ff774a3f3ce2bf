"""
krosmoz-import: DofusDB to KrosmozJDR import pipeline.

Config-driven collection, formula-based conversion, validation and
integration of game data into ruleset records.
"""

from .base import (
    BatchSummary,
    ConfigError,
    ConversionError,
    FetchError,
    IntegrationError,
    KrosmozImportError,
    ValidationIssue,
    ValidationResult,
)
from .orchestrator import Orchestrator, OrchestratorResult, RunOptions, Stage
from .settings import ImportSettings

__version__ = "0.1.0"

__all__ = [
    "BatchSummary",
    "ConfigError",
    "ConversionError",
    "FetchError",
    "ImportSettings",
    "IntegrationError",
    "KrosmozImportError",
    "Orchestrator",
    "OrchestratorResult",
    "RunOptions",
    "Stage",
    "ValidationIssue",
    "ValidationResult",
]
