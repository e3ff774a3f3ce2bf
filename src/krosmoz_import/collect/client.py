"""
HTTP client for source APIs, with retries and an optional response cache.
"""

import asyncio
import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from ..base import FetchError
from ..settings import ImportSettings


logger = logging.getLogger("krosmoz-import.collect")


class SourceClient:
    """Async GET + JSON client.

    Features:
    - Bounded retries with exponential backoff on timeouts, connection
      errors, 429 and 5xx responses
    - No retry on other 4xx responses
    - On-disk JSON cache keyed by URL and query, with a TTL, bypassable per call
    """

    def __init__(
        self,
        settings: ImportSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            settings: Timeouts, retry policy and cache location
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.settings = settings or ImportSettings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.request_count = 0

    async def __aenter__(self) -> "SourceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.http_timeout,
                headers={"User-Agent": self.settings.user_agent, "Accept": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client if open."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        url: str,
        params: list[tuple[str, str]] | None = None,
        skip_cache: bool = False,
    ) -> Any:
        """GET a URL and decode the JSON body.

        Args:
            url: Absolute URL
            params: Query parameters, already flattened
            skip_cache: Ignore any cached response (the fresh one is still cached)

        Returns:
            Decoded JSON

        Raises:
            FetchError: On a client error, or when retries are exhausted
        """
        params = params or []
        cache_file = self._get_cache_path(url, params)

        if cache_file is not None and not skip_cache:
            cached = self._read_cache(cache_file)
            if cached is not None:
                logger.debug(f"Cache hit for {url}")
                return cached

        data = await self._fetch_with_retry(url, params)

        if cache_file is not None:
            cache_file.parent.mkdir(parents=True, exist_ok=True)
            payload = {"url": url, "cached_at": datetime.now().isoformat(), "data": data}
            cache_file.write_text(json.dumps(payload), encoding="utf-8")
        return data

    async def _fetch_with_retry(self, url: str, params: list[tuple[str, str]]) -> Any:
        client = self._get_client()
        last_error: str = ""
        attempts = self.settings.max_retries

        for attempt in range(attempts):
            self.request_count += 1
            try:
                response = await client.get(url, params=params)
            except httpx.TimeoutException as e:
                logger.warning(f"Timeout fetching {url}, attempt {attempt + 1}")
                last_error = f"timeout: {e}"
                await self._backoff(attempt, attempts)
                continue
            except httpx.TransportError as e:
                logger.warning(f"Connection error fetching {url}, attempt {attempt + 1}: {e}")
                last_error = f"connection error: {e}"
                await self._backoff(attempt, attempts)
                continue

            full_url = str(response.request.url) if response.request else url
            status = response.status_code

            if status == 429 or status >= 500:
                logger.warning(f"HTTP {status} from {full_url}, attempt {attempt + 1}")
                last_error = f"HTTP {status}"
                await self._backoff(attempt, attempts)
                if attempt == attempts - 1:
                    raise FetchError(f"HTTP {status}: {full_url}", status=status, url=full_url)
                continue

            if status >= 400:
                raise FetchError(f"HTTP {status}: {full_url}", status=status, url=full_url)

            try:
                return response.json()
            except ValueError:
                raise FetchError(f"Invalid JSON from {full_url}", status=status, url=full_url) from None

        raise FetchError(f"Failed to fetch {url} after {attempts} attempts: {last_error}", url=url)

    async def _backoff(self, attempt: int, attempts: int) -> None:
        if attempt >= attempts - 1 or self.settings.retry_backoff <= 0:
            return
        await asyncio.sleep(self.settings.retry_backoff ** attempt)

    # =========================================================================
    # Cache
    # =========================================================================

    def _get_cache_path(self, url: str, params: list[tuple[str, str]]) -> Path | None:
        if self.settings.cache_dir is None:
            return None
        identity = url + "?" + "&".join(f"{k}={v}" for k, v in params)
        digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()
        return Path(self.settings.cache_dir) / f"{digest}.json"

    def _read_cache(self, cache_file: Path) -> Any:
        if not cache_file.exists():
            return None
        try:
            cached = json.loads(cache_file.read_text(encoding="utf-8"))
            cached_at = datetime.fromisoformat(cached["cached_at"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning(f"Corrupt cache file: {cache_file}, refetching")
            cache_file.unlink()
            return None
        age = (datetime.now() - cached_at).total_seconds()
        if age > self.settings.cache_ttl:
            return None
        return cached.get("data")
