"""
FastAPI application for dashdata.

Lifespan manages the httpx client, request cache, rate limiter and services.
Routes: /v1/kpi/{metric}, /v1/insights/{metric_id}, /v1/cache,
/v1/filters/changed, /health.
Optional API key authentication on /v1/* endpoints.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.security import APIKeyHeader

from dashdata.cache import RequestCache, RequestCancelled
from dashdata.config import AppConfig, load_config
from dashdata.dashboard_client import DashboardAPIError, DashboardClient
from dashdata.insights import InsightsService, InsightsUnavailable, RateLimited
from dashdata.kpi import KpiService
from dashdata.models import (
    FiltersChanged,
    FilterState,
    InsightResult,
    InsightsRequest,
    KpiSummary,
)
from dashdata.prefetch import Prefetcher
from dashdata.rate_limiter import RateLimiter
from dashdata.storage import FileSessionStore

logger = logging.getLogger(__name__)

# Global references set during lifespan
_config: Optional[AppConfig] = None
_cache: Optional[RequestCache] = None
_kpi_service: Optional[KpiService] = None
_insights_service: Optional[InsightsService] = None
_prefetcher: Optional[Prefetcher] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load config, create HTTP client, cache, rate limiter, services."""
    global _config, _cache, _kpi_service, _insights_service, _prefetcher

    # Configure logging
    log_level = os.environ.get("LOG_LEVEL", "info").upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    _config = load_config()
    logger.info(
        "Loaded config: api_base_url=%s, kpi_ttl=%s, insights_ttl=%s, session_store=%s",
        _config.api_base_url,
        _config.cache.kpi_ttl,
        _config.cache.insights_ttl,
        _config.cache.session_store_path or "none",
    )

    async with httpx.AsyncClient() as http_client:
        client = DashboardClient(
            http_client=http_client,
            base_url=_config.api_base_url,
            api_key=_config.dashboard_api_key,
        )
        store = None
        if _config.cache.session_store_path:
            store = FileSessionStore(_config.cache.session_store_path)
        _cache = RequestCache(
            store=store,
            stale_fraction=_config.cache.stale_fraction,
            default_ttl=_config.cache_ttl("kpi"),
        )
        rate_limiter = RateLimiter(
            base_backoff=_config.rate_limit.base_backoff,
            max_backoff=_config.rate_limit.max_backoff,
            quota_floor=_config.rate_limit.quota_floor,
        )
        _kpi_service = KpiService(config=_config, client=client, cache=_cache)
        _insights_service = InsightsService(
            config=_config, client=client, cache=_cache, rate_limiter=rate_limiter
        )
        _prefetcher = Prefetcher(config=_config, kpi_service=_kpi_service)
        logger.info("dashdata ready")
        try:
            yield
        finally:
            await _prefetcher.aclose()
            await _cache.aclose()
            if store is not None:
                await store.aflush()

    _config = None
    _cache = None
    _kpi_service = None
    _insights_service = None
    _prefetcher = None


app = FastAPI(
    title="Dashboard Data API",
    version="1.0.0",
    description="""
Cached access to the analytics dashboard's KPI and AI insight data.

## Features

- **Deduplicated**: identical concurrent requests share one upstream call
- **Stale-while-revalidate**: near-expiry data is served instantly and refreshed in the background
- **Backoff**: insight requests back off per metric after upstream failures
- **Prefetch**: a filter change warms the cache for every other dashboard view

## Authentication

Optional API key via `X-API-Key` header. The `/health` endpoint is always unauthenticated.
    """.strip(),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "kpi", "description": "KPI scorecard summaries"},
        {"name": "insights", "description": "AI insights per metric"},
        {"name": "cache", "description": "Cache and filter-state control"},
        {"name": "health", "description": "Service health check"},
    ],
)


# ---------------------------------------------------------------------------
# Authentication dependency
# ---------------------------------------------------------------------------

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> None:
    """Check API key if one is configured."""
    if _config is None or _config.api_key is None:
        return  # No auth configured
    if api_key != _config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def _split(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part for part in value.split(",") if part]


def _http_error(exc: Exception) -> HTTPException:
    """Map service errors onto HTTP responses."""
    if isinstance(exc, RateLimited):
        retry_after = str(max(1, int(round(exc.wait or 0))))
        return HTTPException(
            status_code=429, detail=str(exc), headers={"Retry-After": retry_after}
        )
    if isinstance(exc, InsightsUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, RequestCancelled):
        return HTTPException(status_code=499, detail="Request cancelled")
    return HTTPException(status_code=502, detail=str(exc))


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health", tags=["health"], summary="Health check")
async def health():
    """Always returns HTTP 200. No authentication required."""
    return {"status": "healthy"}


@app.get(
    "/v1/kpi/{metric}",
    response_model=KpiSummary,
    dependencies=[Depends(verify_api_key)],
    tags=["kpi"],
    summary="Get KPI summary",
)
async def get_kpi(
    metric: str,
    start: str,
    end: str,
    grain: str = "day",
    comparison_mode: str = Query("yoy", alias="comparisonMode"),
    audience: Optional[str] = None,
    device: Optional[str] = None,
    channel: Optional[str] = None,
    refresh: bool = False,
):
    """
    Return the headline value and growth rate for one metric.

    `audience`, `device` and `channel` are comma-separated lists.
    Set `refresh=true` to bypass the cache.
    """
    if _kpi_service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    filters = FilterState(
        start=start,
        end=end,
        grain=grain,
        comparison_mode=comparison_mode,
        audience=_split(audience),
        device=_split(device),
        channel=_split(channel),
    )
    try:
        return await _kpi_service.get_summary(metric, filters, force_refresh=refresh)
    except (DashboardAPIError, RequestCancelled) as exc:
        logger.warning("KPI %s failed: %s", metric, exc)
        raise _http_error(exc) from exc


@app.post(
    "/v1/insights/{metric_id}",
    response_model=InsightResult,
    dependencies=[Depends(verify_api_key)],
    tags=["insights"],
    summary="Get AI insights for a metric",
    responses={429: {"description": "Backing off after upstream failures"}},
)
async def get_insights(metric_id: str, body: InsightsRequest):
    if _insights_service is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    try:
        return await _insights_service.get_insights(metric_id, body)
    except (DashboardAPIError, RequestCancelled, RateLimited, InsightsUnavailable) as exc:
        logger.warning("Insights for %s failed: %s", metric_id, exc)
        raise _http_error(exc) from exc


@app.delete(
    "/v1/cache",
    dependencies=[Depends(verify_api_key)],
    tags=["cache"],
    summary="Clear cached data",
)
async def clear_cache(prefix: Optional[str] = None):
    """Clear all cached entries, or only keys starting with `prefix`."""
    if _cache is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    _cache.clear(prefix)
    return {"cleared": True}


@app.post(
    "/v1/filters/changed",
    status_code=202,
    dependencies=[Depends(verify_api_key)],
    tags=["cache"],
    summary="Notify a filter change",
)
async def filters_changed(body: FiltersChanged):
    """Abort requests for the old filters and prefetch the other views."""
    if _kpi_service is None or _prefetcher is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    _kpi_service.filters_changed()
    _prefetcher.schedule(body.path, body.filters)
    return {"prefetch_scheduled": True}
