"""
KPI service: scorecard summaries served through the request cache.

Every widget on a page asks for its metric with the page's filter state.
Identical requests share one upstream call; a filter change aborts whatever
is still in flight for the old filters.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from dashdata.cache import CancelToken, RequestCache, build_kpi_cache_key
from dashdata.config import AppConfig
from dashdata.dashboard_client import DashboardAPIError, DashboardClient
from dashdata.models import FilterState, KpiSummary

logger = logging.getLogger(__name__)

SOURCE_NOTE_PREFIX = "Källa:"


def kpi_cache_key(metric: str, filters: FilterState) -> str:
    return build_kpi_cache_key(
        metric=metric,
        start=filters.start,
        end=filters.end,
        grain=filters.grain,
        comparison_mode=filters.comparison_mode,
        audience=filters.audience,
        device=filters.device,
        channel=filters.channel,
    )


def check_payload(metric: str, payload: Any) -> dict[str, Any]:
    """Raise DashboardAPIError unless payload has a summary with a current value."""
    summary = payload.get("summary") if isinstance(payload, dict) else None
    if not isinstance(summary, dict) or "current" not in summary:
        raise DashboardAPIError(f"Malformed KPI payload for {metric}")
    return payload


def summary_from_payload(metric: str, payload: dict[str, Any]) -> KpiSummary:
    """Map an /api/kpi response onto a KpiSummary."""
    summary = check_payload(metric, payload)["summary"]

    source = None
    for note in payload.get("notes") or []:
        if isinstance(note, str) and note.startswith(SOURCE_NOTE_PREFIX):
            source = note[len(SOURCE_NOTE_PREFIX):].strip()
            break

    growth = summary.get("yoyPct")
    return KpiSummary(
        metric=metric,
        value=summary["current"],
        growth_rate=growth if growth is not None else 0,
        source=source,
    )


class KpiService:
    def __init__(
        self, config: AppConfig, client: DashboardClient, cache: RequestCache
    ) -> None:
        self._config = config
        self._client = client
        self._cache = cache

    async def fetch_payload(
        self, metric: str, filters: FilterState, force_refresh: bool = False
    ) -> dict[str, Any]:
        """Raw /api/kpi payload, from cache when possible."""

        async def fetcher(token: CancelToken) -> dict[str, Any]:
            payload = await self._client.fetch_kpi(metric, filters, token)
            return check_payload(metric, payload)

        future = self._cache.fetch_with_cache(
            kpi_cache_key(metric, filters),
            fetcher,
            ttl=self._config.cache_ttl("kpi"),
            force_refresh=force_refresh,
        )
        return await asyncio.shield(future)

    async def get_summary(
        self, metric: str, filters: FilterState, force_refresh: bool = False
    ) -> KpiSummary:
        payload = await self.fetch_payload(metric, filters, force_refresh)
        return summary_from_payload(metric, payload)

    def filters_changed(self) -> None:
        """Drop requests made for the previous filter state."""
        self._cache.abort_all()
