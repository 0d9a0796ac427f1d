"""
AI insights for a single metric, cached and guarded by the rate limiter.

Insights are expensive to generate and the upstream is quota-limited, so
results are cached for longer than KPIs and failures back off per metric.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from dashdata.cache import (
    CancelToken,
    RequestCache,
    RequestCancelled,
    build_insights_cache_key,
)
from dashdata.config import AppConfig
from dashdata.dashboard_client import DashboardAPIError, DashboardClient
from dashdata.models import InsightResult, InsightsRequest
from dashdata.rate_limiter import RateLimiter, is_quota_error

logger = logging.getLogger(__name__)

METRIC_NAMES = {
    "mau": "Total users",
    "pageviews": "Sidvisningar",
    "tasks": "Tasks",
    "features": "Funktioner",
    "tasks_rate": "Tasks",
    "features_rate": "Funktioner",
    "sessions": "Sessions",
    "totalUsers": "Total users",
    "returningUsers": "Returning users",
    "engagedSessions": "Engaged Sessions",
    "engagementRate": "Engagement Rate",
    "avgEngagementTime": "Avg Engagement Time",
    "channels": "Kanaler",
    "devices": "Enheter",
    "usage_patterns": "Användningsmönster",
    "cities": "Städer",
}


class RateLimited(Exception):
    """Raised when the backoff window is active and nothing is cached."""

    def __init__(self, wait: Optional[float]):
        super().__init__(f"Rate limited, retry in {wait or 0:.1f}s")
        self.wait = wait


class InsightsUnavailable(Exception):
    """Raised when the upstream answers without a usable insight."""


def limiter_key(metric_id: str) -> str:
    return f"insights:{metric_id}"


def build_payload(metric_id: str, request: InsightsRequest) -> dict[str, Any]:
    """Request body for POST /api/insights."""
    comparison = None
    if request.comparison_series is not None:
        comparison = [p.model_dump() for p in request.comparison_series]
    return {
        "metricId": metric_id,
        "metricName": METRIC_NAMES.get(metric_id, metric_id),
        "dateRange": {"start": request.start, "end": request.end},
        "series": [p.model_dump() for p in request.series],
        "comparisonSeries": comparison,
        "anomalies": request.anomalies,
        "filters": {
            "audience": request.audience,
            "device": request.device,
            "channel": request.channel,
        },
        "distributionContext": request.distribution_context,
    }


class InsightsService:
    def __init__(
        self,
        config: AppConfig,
        client: DashboardClient,
        cache: RequestCache,
        rate_limiter: RateLimiter,
    ) -> None:
        self._config = config
        self._client = client
        self._cache = cache
        self._rate_limiter = rate_limiter

    async def get_insights(
        self, metric_id: str, request: InsightsRequest
    ) -> InsightResult:
        """
        Return insights for one metric.

        While the metric is backing off, only a cached result (fresh or
        stale) is served; otherwise RateLimited is raised without calling
        the upstream.
        """
        cache_key = build_insights_cache_key(
            metric_id=metric_id,
            start=request.start,
            end=request.end,
            audience=request.audience,
            device=request.device,
            channel=request.channel,
        )
        lkey = limiter_key(metric_id)

        decision = self._rate_limiter.should_allow(lkey)
        if not decision.allowed:
            cached = self._cache.get_with_meta(cache_key)
            if cached is not None:
                logger.info("Serving cached insights for %s while rate limited", metric_id)
                return InsightResult.model_validate(cached.value)
            raise RateLimited(decision.wait)

        payload = build_payload(metric_id, request)

        async def fetcher(token: CancelToken) -> dict[str, Any]:
            try:
                data = await self._client.fetch_insights(payload, token)
            except RequestCancelled:
                raise
            except Exception as exc:
                self._rate_limiter.record_failure(lkey, is_quota_error(exc))
                raise
            if not isinstance(data, dict):
                self._rate_limiter.record_failure(lkey)
                raise DashboardAPIError(f"Malformed insights payload for {metric_id}")
            if data.get("useMock") or data.get("observations") is None:
                raise InsightsUnavailable(f"No insights available for {metric_id}")
            self._rate_limiter.record_success(lkey)
            return InsightResult(insight=data, used_openai=True).model_dump()

        future = self._cache.fetch_with_cache(
            cache_key, fetcher, ttl=self._config.cache_ttl("insights")
        )
        return InsightResult.model_validate(await asyncio.shield(future))
