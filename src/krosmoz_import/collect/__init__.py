"""
Collection of raw records from source APIs.
"""

from .client import SourceClient
from .collector import CollectResult, Collector

__all__ = ["CollectResult", "Collector", "SourceClient"]
