"""
Runtime settings for the import pipeline.

Values come from the environment (optionally a ``.env`` file loaded with
python-dotenv) and fall back to the defaults declared on the model.
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


logger = logging.getLogger("krosmoz-import")

PACKAGE_RESOURCES = Path(__file__).parent / "resources"
DEFAULT_USER_AGENT = "krosmoz-import/0.1 (+https://krosmoz-jdr.fr)"


class ImportSettings(BaseModel):
    """Settings shared by the collector, the stores and the CLI."""

    # Configuration files
    resources_dir: Path = Field(
        default=PACKAGE_RESOURCES,
        description="Directory holding sources/<source>/... and the characteristic/formula YAML files"
    )

    # HTTP
    http_timeout: float = Field(default=30.0, gt=0.0, description="Seconds before a request times out")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per request for transient failures")
    retry_backoff: float = Field(default=2.0, ge=0.0, description="Exponential backoff base, in seconds")
    user_agent: str = Field(default=DEFAULT_USER_AGENT, description="User-Agent header sent to the source")

    # Collection
    page_size: int = Field(default=50, ge=1, le=500, description="Default $limit requested per page")
    default_lang: str = Field(default="fr", description="Language used for {lang} placeholders")

    # Response cache
    cache_dir: Path | None = Field(default=None, description="Directory for cached responses; None disables caching")
    cache_ttl: int = Field(default=3600, ge=0, description="Seconds a cached response stays fresh")

    # Storage
    database_url: str = Field(
        default="sqlite:///krosmoz_import.db",
        description="SQLAlchemy URL of the discovery registry database"
    )
    records_dir: Path = Field(default=Path("krosmoz_data"), description="Directory of the JSON record store")

    @field_validator("default_lang")
    @classmethod
    def validate_lang(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("default_lang must not be empty")
        return v

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "ImportSettings":
        """Build settings from ``KROSMOZ_*`` environment variables.

        Args:
            dotenv: Load a ``.env`` file first, when one exists

        Returns:
            Settings with every unset variable left at its default
        """
        if dotenv and not load_dotenv():
            logger.debug("No .env file found, using process environment only")

        env_map = {
            "resources_dir": "KROSMOZ_RESOURCES_DIR",
            "http_timeout": "KROSMOZ_HTTP_TIMEOUT",
            "max_retries": "KROSMOZ_MAX_RETRIES",
            "retry_backoff": "KROSMOZ_RETRY_BACKOFF",
            "user_agent": "KROSMOZ_USER_AGENT",
            "page_size": "KROSMOZ_PAGE_SIZE",
            "default_lang": "KROSMOZ_LANG",
            "cache_dir": "KROSMOZ_CACHE_DIR",
            "cache_ttl": "KROSMOZ_CACHE_TTL",
            "database_url": "KROSMOZ_DATABASE_URL",
            "records_dir": "KROSMOZ_RECORDS_DIR",
        }
        values = {}
        for field, var in env_map.items():
            raw = os.getenv(var)
            if raw is not None and raw != "":
                values[field] = raw
        return cls.model_validate(values)
