"""Movie search used to fill the watch queue."""
from __future__ import annotations

from functools import lru_cache

from fastapi import APIRouter, Depends, Query

from ..schemas.party import SearchResponse
from ..services.tmdb import TmdbClient

router = APIRouter()


@lru_cache
def get_tmdb_client() -> TmdbClient:
    return TmdbClient.from_settings()


@router.get("/movies", response_model=SearchResponse)
async def search_movies(
    query: str = Query(..., min_length=1, max_length=200),
    client: TmdbClient = Depends(get_tmdb_client),
) -> SearchResponse:
    """Return queue candidates; empty when search is not configured."""

    return SearchResponse(results=await client.search_movies(query))
