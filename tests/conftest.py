"""
Pytest configuration and fixtures for krosmoz-import tests.
"""

import json
import sys
from pathlib import Path

import httpx
import pytest

# Add src directory to Python path to allow importing krosmoz_import
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from krosmoz_import.characteristics import CharacteristicRepository
from krosmoz_import.config import ConfigRegistry
from krosmoz_import.conversion import ConversionFormulaRepository, ConversionFormulas, FieldMapper, FormatterRegistry
from krosmoz_import.settings import PACKAGE_RESOURCES, ImportSettings


# Configure anyio to only use asyncio (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"


# ==============================================================================
# Sample DofusDB records
# ==============================================================================

BOUFTOU = {
    "id": 31,
    "name": {"fr": "Bouftou", "en": "Gobball"},
    "race": 1,
    "raceId": 1,
    "grades": [{"level": 50, "lifePoints": 800}],
}


@pytest.fixture
def bouftou():
    return json.loads(json.dumps(BOUFTOU))


# ==============================================================================
# Bundled configuration
# ==============================================================================

@pytest.fixture
def characteristics():
    return CharacteristicRepository.load(PACKAGE_RESOURCES / "characteristics.yaml")


@pytest.fixture
def conversion(characteristics):
    formulas = ConversionFormulaRepository.load(PACKAGE_RESOURCES / "conversion_formulas.yaml")
    return ConversionFormulas(characteristics, formulas)


@pytest.fixture
def formatters(conversion):
    return FormatterRegistry(conversion)


@pytest.fixture
def mapper(formatters):
    return FieldMapper(formatters)


@pytest.fixture
def config_registry(formatters):
    return ConfigRegistry(PACKAGE_RESOURCES, formatters)


@pytest.fixture
def settings(tmp_path):
    """Settings with no retry delay and no cache."""
    return ImportSettings(
        retry_backoff=0.0,
        records_dir=tmp_path / "records",
        database_url="sqlite://",
    )


class FakeSource:
    """Minimal in-memory stand-in for the DofusDB API, served through httpx.MockTransport.

    ``routes`` maps a path to either a JSON payload or a callable taking the
    request. Every request is recorded in ``requests``.
    """

    def __init__(self, routes: dict):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"message": "Not found"})
        if callable(route):
            return route(request)
        return httpx.Response(200, json=route)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def fake_source():
    return FakeSource
