"""
Safe formula evaluation (arithmetic and table mode).
"""

from .engine import FormulaEngine
from .parser import FormulaSyntaxError

__all__ = ["FormulaEngine", "FormulaSyntaxError"]
