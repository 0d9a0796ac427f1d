"""
Background prefetch of the other dashboard views.

After a filter change the visible widgets fetch their own data. This module
warms the cache for every other view with the same filters, so switching
pages is instant. Requests go through the KPI service and therefore join any
identical request a widget already started.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from dashdata.cache import RequestCancelled
from dashdata.config import AppConfig
from dashdata.kpi import KpiService
from dashdata.models import FilterState

logger = logging.getLogger(__name__)

# Metrics used by each view, keyed by view id (path segments joined by "-")
VIEW_METRICS: dict[str, list[str]] = {
    "home": [
        "mau",
        "sessions",
        "pageviews",
        "engagementRate",
        "avgEngagementTime",
        "ndi",
        "tasks_rate",
        "features_rate",
        "cwv_total",
    ],
    "oversikt-besok": [
        "sessions",
        "engagedSessions",
        "pageviews",
        "mau",
        "engagementRate",
        "avgEngagementTime",
    ],
    "anvandning": ["tasks", "features", "tasks_rate", "features_rate"],
    "prestanda": ["cwv_total"],
    "konverteringar": ["sessions", "engagementRate"],
    "kundnojdhet": ["ndi"],
}


def view_for_path(path: str) -> str:
    segments = [s for s in path.split("/") if s]
    return "-".join(segments) if segments else "home"


def relevant_views(path: str) -> list[str]:
    """Every known view except the one at `path`."""
    current = view_for_path(path)
    return [view for view in VIEW_METRICS if view != current]


def metrics_for_views(views: list[str]) -> list[str]:
    """Unique metrics across `views`, in first-seen order."""
    seen: dict[str, None] = {}
    for view in views:
        for metric in VIEW_METRICS.get(view, []):
            seen.setdefault(metric, None)
    return list(seen)


class Prefetcher:
    def __init__(self, config: AppConfig, kpi_service: KpiService) -> None:
        self._config = config
        self._kpi = kpi_service
        self._pending: Optional[asyncio.Task] = None

    async def prefetch_relevant_views(
        self, path: str, filters: FilterState
    ) -> tuple[int, int]:
        """
        Fetch all metrics of the other views concurrently.

        Failures are logged, never raised. Returns (succeeded, failed).
        """
        views = relevant_views(path)
        metrics = metrics_for_views(views)
        if not metrics:
            logger.debug("No views to prefetch")
            return 0, 0

        logger.debug("Starting prefetch for views: %s", views)
        results = await asyncio.gather(
            *(self._kpi.fetch_payload(metric, filters) for metric in metrics),
            return_exceptions=True,
        )

        failed = 0
        for metric, result in zip(metrics, results):
            if isinstance(result, RequestCancelled):
                failed += 1
                logger.debug("Prefetch of %s cancelled", metric)
            elif isinstance(result, BaseException):
                failed += 1
                logger.warning("Failed to prefetch metric %s: %s", metric, result)
        succeeded = len(metrics) - failed
        logger.debug("Prefetch completed: %d succeeded, %d failed", succeeded, failed)
        return succeeded, failed

    def schedule(
        self, path: str, filters: FilterState, delay: Optional[float] = None
    ) -> asyncio.Task:
        """
        Prefetch after `delay` seconds, replacing any prefetch still waiting.

        Rapid filter changes therefore result in a single prefetch.
        """
        if delay is None:
            delay = self._config.prefetch_delay
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = asyncio.get_running_loop().create_task(
            self._delayed(path, filters, delay)
        )
        return self._pending

    async def _delayed(self, path: str, filters: FilterState, delay: float) -> None:
        await asyncio.sleep(delay)
        await self.prefetch_relevant_views(path, filters)

    async def aclose(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
            await asyncio.gather(self._pending, return_exceptions=True)
        self._pending = None
