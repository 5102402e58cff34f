"""TMDB movie search used to propose queue candidates."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from ..core.config import Settings, settings as default_settings
from ..schemas.messages import QueueCandidate
from .cache import TTLCache

logger = logging.getLogger(__name__)


class TmdbClient:
    """Thin TMDB reader with an injected response cache.

    A missing API key or any HTTP failure yields no results rather than an
    error: search only feeds suggestions.
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.themoviedb.org/3",
        cache: TTLCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._cache = cache if cache is not None else TTLCache()
        self._client = http_client
        self._timeout = timeout

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "TmdbClient":
        cfg = config or default_settings
        return cls(
            cfg.tmdb_api_key,
            base_url=cfg.tmdb_base_url,
            cache=TTLCache(cfg.tmdb_cache_ttl_seconds),
        )

    @property
    def enabled(self) -> bool:
        return bool(self._api_key.strip())

    async def search_movies(self, query: str) -> list[QueueCandidate]:
        query = query.strip()
        if not query:
            return []
        data = await self._fetch("/search/movie", {"query": query})
        if not data:
            return []
        return [candidate for candidate in map(movie_to_candidate, data.get("results") or []) if candidate]

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _fetch(self, path: str, params: dict[str, Any]) -> dict[str, Any] | None:
        if not self.enabled:
            return None

        cache_key = f"{path}?{sorted(params.items())}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        try:
            response = await self._client.get(
                f"{self._base_url}{path}",
                params={**params, "api_key": self._api_key},
            )
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("TMDB request %s failed: %s", path, exc)
            return None

        self._cache.set(cache_key, data)
        return data


def movie_to_candidate(movie: dict[str, Any]) -> QueueCandidate | None:
    """Map one ``/search/movie`` result onto a queue candidate."""

    if movie.get("id") is None or not movie.get("title"):
        return None
    release = movie.get("release_date") or ""
    return QueueCandidate(
        tmdb_id=int(movie["id"]),
        media_type="movie",
        title=movie["title"],
        poster=movie.get("poster_path"),
        year=release[:4],
    )
