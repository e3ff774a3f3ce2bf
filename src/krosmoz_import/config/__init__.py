"""
Declarative import configuration.
"""

from .loader import ConfigRegistry
from .models import EntityConfig, FieldMapping, SourceConfig

__all__ = ["ConfigRegistry", "EntityConfig", "FieldMapping", "SourceConfig"]
