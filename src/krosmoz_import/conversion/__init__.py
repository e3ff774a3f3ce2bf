"""
Conversion of raw source records into ruleset records.
"""

from .formatters import ConversionContext, FormatterRegistry
from .formulas import ConversionFormulaRepository, ConversionFormulas
from .mapper import FieldMapper
from .paths import resolve_path
from .resistance import ResistanceConverter

__all__ = [
    "ConversionContext",
    "ConversionFormulaRepository",
    "ConversionFormulas",
    "FieldMapper",
    "FormatterRegistry",
    "ResistanceConverter",
    "resolve_path",
]
