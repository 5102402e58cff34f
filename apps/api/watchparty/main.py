"""FastAPI control surface for the watch-party session."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .core.config import settings
from .routers import party as party_router
from .routers import search as search_router

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastAPI):
    logger.info("Watch party API starting (%s)", settings.app_env)
    yield
    logger.info("Watch party API shutting down")
    await party_router.get_party().leave_party()
    await search_router.get_tmdb_client().aclose()


app = FastAPI(title="Watch Party API", version="0.1.0", lifespan=lifespan)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


app.include_router(party_router.router, prefix="/api/party", tags=["party"])
app.include_router(search_router.router, prefix="/api/search", tags=["search"])
