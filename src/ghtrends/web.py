"""
HTTP trigger for the scheduled jobs plus the read-only trends query.

Run:
    uvicorn ghtrends.web:create_app --factory --host 0.0.0.0 --port 8000
"""
import asyncio
import hmac
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ghtrends import __version__
from ghtrends.config import ConfigError, Settings, get_settings
from ghtrends.db.records import TrendView
from ghtrends.runtime import build_store, run_discovery, run_scoring

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str


def _unauthorized() -> JSONResponse:
    return JSONResponse({"error": "Unauthorized"}, status_code=401)


def is_authorized(settings: Settings, secret: Optional[str]) -> bool:
    try:
        expected = settings.require_cron_secret()
    except ConfigError as exc:
        logger.error(f"Rejecting trigger: {exc}")
        return False
    if secret is None:
        return False
    return hmac.compare_digest(secret.encode(), expected.encode())


def create_app(settings: Settings | None = None, store=None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=logging.INFO)

    app = FastAPI(
        title="GitHub Trends",
        description="Discovery and 14-day growth scoring of GitHub repositories",
        version=__version__,
    )
    app.state.settings = settings
    app.state.store = store if store is not None else build_store(settings)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check():
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now(timezone.utc).isoformat(),
            version=__version__,
        )

    # store calls block, so this route runs in the threadpool
    @app.get("/cron/discover", tags=["Cron"])
    def cron_discover(request: Request, secret: Optional[str] = None):
        state = request.app.state
        if not is_authorized(state.settings, secret):
            return _unauthorized()
        try:
            summary = asyncio.run(run_discovery(state.settings, state.store))
        except ConfigError as exc:
            logger.error(f"Discovery not started: {exc}")
            return JSONResponse({"error": str(exc)}, status_code=500)
        return JSONResponse(summary.as_dict(), status_code=200 if summary.ok else 500)

    @app.get("/cron/score", tags=["Cron"])
    def cron_score(request: Request, secret: Optional[str] = None):
        state = request.app.state
        if not is_authorized(state.settings, secret):
            return _unauthorized()
        summary = run_scoring(state.settings, state.store)
        return JSONResponse(summary.as_dict(), status_code=200 if summary.ok else 500)

    @app.get("/trends", response_model=List[TrendView], tags=["Trends"])
    def list_trends(
        request: Request,
        max_stars: Optional[int] = Query(None, ge=0),
        min_growth: Optional[int] = Query(None),
        limit: int = Query(200, ge=1, le=1000),
    ):
        return request.app.state.store.list_trends(
            max_stars=max_stars, min_growth=min_growth, limit=limit
        )

    return app
