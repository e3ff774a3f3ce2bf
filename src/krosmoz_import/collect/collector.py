"""
Config-driven collection of raw records from a source API.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from ..base import ConfigError
from ..config import ConfigRegistry, EntityConfig
from ..conversion.formatters import pick_lang
from ..conversion.paths import resolve_path
from .client import SourceClient
from .query import filters_to_query, flatten_query, interpolate_defaults


logger = logging.getLogger("krosmoz-import.collect")

# Entity names whose configuration is stored under another name
ENTITY_ALIASES = {"class": "breed"}

DEFAULT_PAGE_SIZE = 50
DEFAULT_MAX_PAGES = 50
DEFAULT_MAX_ITEMS = 5000


@dataclass
class CollectResult:
    """Items collected by ``fetch_many`` and the pagination summary."""

    items: list[dict[str, Any]] = field(default_factory=list)
    total: int = 0
    limit: int = 0
    offset: int = 0
    pages: int = 0

    @property
    def meta(self) -> dict[str, int]:
        return {
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "collected": len(self.items),
            "pages": self.pages,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"items": self.items, "meta": self.meta}


def config_entity(entity: str) -> str:
    return ENTITY_ALIASES.get(entity, entity)


class Collector:
    """Fetches raw records as declared by entity configurations."""

    def __init__(self, config: ConfigRegistry, client: SourceClient):
        self.config = config
        self.client = client

    async def fetch_one(
        self,
        source: str,
        entity: str,
        record_id: int,
        skip_cache: bool = False,
        lang: str | None = None,
    ) -> dict[str, Any]:
        """Fetch one raw record by id.

        Uses ``endpoints.fetchOne`` when configured, otherwise a one-item
        ``fetch_many`` filtered on the id.

        Returns:
            The raw record, or an empty dict when the source has none
        """
        entity = config_entity(entity)
        source_config = self.config.load_source(source)
        entity_config = self.config.load_entity(source, entity)
        lang = lang or source_config.default_language

        fetch_one = entity_config.endpoints.fetch_one
        if fetch_one is None:
            if entity_config.filters.get("id") is None:
                raise ConfigError(f"{source}/{entity}: needs endpoints.fetchOne or a supported 'id' filter")
            result = await self.fetch_many(
                source, entity, {"id": record_id}, limit=1, skip_cache=skip_cache, lang=lang,
            )
            return result.items[0] if result.items else {}

        path = fetch_one.path_template.replace("{id}", str(record_id))
        params = flatten_query(interpolate_defaults(fetch_one.query_defaults, lang))
        data = await self.client.get_json(self._url(source_config.base_url, path), params, skip_cache=skip_cache)
        return data if isinstance(data, dict) else {}

    async def fetch_many(
        self,
        source: str,
        entity: str,
        filters: dict[str, Any] | None = None,
        limit: int = 0,
        offset: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        skip_cache: bool = False,
        max_pages: int = DEFAULT_MAX_PAGES,
        max_items: int = DEFAULT_MAX_ITEMS,
        lang: str | None = None,
    ) -> CollectResult:
        """Fetch records page by page using ``$skip``/``$limit``.

        Stops when the requested limit is reached, on a short or empty page,
        once ``$skip`` passes the reported total, or at the page/item caps.

        Args:
            source: Source id
            entity: Entity id
            filters: Caller filters, translated for the supported keys only
            limit: Maximum number of items; 0 collects everything
            offset: Initial ``$skip``
            page_size: ``$limit`` requested per page
            skip_cache: Bypass the response cache
            max_pages: Safety cap on pages (0 disables it)
            max_items: Safety cap on items (0 disables it)
            lang: Language for ``{lang}`` placeholders

        Returns:
            CollectResult with the items (after the collect strategy) and meta
        """
        entity = config_entity(entity)
        source_config = self.config.load_source(source)
        entity_config = self.config.load_entity(source, entity)
        lang = lang or source_config.default_language

        limit = max(0, int(limit))
        skip = initial_skip = max(0, int(offset))
        page_size = max(1, int(page_size))
        max_pages = max_pages if max_pages > 0 else None
        max_items = max_items if max_items > 0 else None

        url = self._url(source_config.base_url, entity_config.endpoints.fetch_many.path)
        defaults = interpolate_defaults(entity_config.endpoints.fetch_many.query_defaults, lang)
        filter_query = filters_to_query(entity_config.filters, filters)

        items: list[dict[str, Any]] = []
        total = 0
        page = 0
        effective_limit = page_size

        while max_pages is None or page < max_pages:
            page += 1
            request_limit = min(page_size, limit - len(items)) if limit else page_size
            query = {**defaults, "$limit": request_limit, "$skip": skip, **filter_query}
            response = await self.client.get_json(url, flatten_query(query), skip_cache=skip_cache)
            if not isinstance(response, dict):
                response = {}

            data = response.get("data")
            data = data if isinstance(data, list) else []
            total = self._int(response.get("total"), total)
            api_limit = self._int(response.get("limit"), 0)
            if api_limit > 0:
                effective_limit = api_limit

            reached_cap = False
            for item in data:
                if isinstance(item, dict):
                    items.append(item)
                if (limit and len(items) >= limit) or (max_items and len(items) >= max_items):
                    reached_cap = True
                    break
            logger.debug(f"Page {page} of {entity}: {len(data)} row(s), {len(items)} collected")

            skip += effective_limit
            if reached_cap:
                break
            if total > 0 and skip >= total:
                break
            if not data or len(data) < min(effective_limit, request_limit):
                break

        if total == 0:
            total = len(items) + initial_skip

        items = self.apply_collect_strategy(entity_config, items, lang)
        logger.info(f"Collected {len(items)} {entity} record(s) from {source} in {page} page(s)")
        return CollectResult(items=items, total=total, limit=limit, offset=initial_skip, pages=page)

    async def fetch_recipe(
        self, source: str, result_id: int, skip_cache: bool = False, lang: str | None = None,
    ) -> dict[str, list] | None:
        """Fetch the crafting recipe producing ``result_id``.

        Returns:
            ``{"ingredientIds": [...], "quantities": [...]}``, or None without a recipe
        """
        source_config = self.config.load_source(source)
        params = flatten_query({"resultId": result_id, "lang": lang or source_config.default_language})
        response = await self.client.get_json(self._url(source_config.base_url, "/recipes"), params, skip_cache=skip_cache)
        data = response.get("data") if isinstance(response, dict) else None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            return None
        first = data[0]
        ingredient_ids = first.get("ingredientIds")
        quantities = first.get("quantities")
        return {
            "ingredientIds": list(ingredient_ids) if isinstance(ingredient_ids, list) else [],
            "quantities": list(quantities) if isinstance(quantities, list) else [],
        }

    # =========================================================================
    # Collect strategies
    # =========================================================================

    @staticmethod
    def apply_collect_strategy(entity_config: EntityConfig, items: list[dict[str, Any]], lang: str) -> list[dict[str, Any]]:
        """Post-process collected rows as declared by ``meta.collectStrategy``."""
        strategy = entity_config.meta.collect_strategy
        if strategy is None:
            return items

        if strategy.filter_out_cosmetic:
            return [row for row in items if row.get("isCosmetic") is not True]

        if not strategy.group_by or strategy.output_shape not in ("catalog", "uniqueSuperTypes"):
            return items

        catalog: dict[int, dict[str, Any]] = {}
        for row in items:
            key = Collector._int(resolve_path(row, strategy.group_by), 0)
            if key <= 0 or key in catalog:
                continue
            name = pick_lang(resolve_path(row, strategy.name_path), lang, "fr")
            catalog[key] = {"id": key, "name": name or None}
        return [catalog[key] for key in sorted(catalog)]

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _url(base_url: str, path: str) -> str:
        if not path:
            raise ConfigError("Empty endpoint path")
        return f"{base_url.rstrip('/')}/{path.lstrip('/')}"

    @staticmethod
    def _int(value: Any, default: int) -> int:
        if isinstance(value, bool):
            return default
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
        return default
