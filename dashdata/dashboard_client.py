"""
Async client for the dashboard's upstream API.

Thin wrapper around httpx. Fetches KPI summaries and AI insights.
Raises DashboardAPIError on failures, RequestCancelled when the caller's
CancelToken fires before the response arrives.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from dashdata.cache import CancelToken, RequestCancelled
from dashdata.models import FilterState

logger = logging.getLogger(__name__)


class DashboardAPIError(Exception):
    """Raised when a dashboard API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def kpi_query_params(metric: str, filters: FilterState) -> dict[str, str]:
    """Query string for /api/kpi. Empty filter lists are left out."""
    params = {
        "metric": metric,
        "start": filters.start,
        "end": filters.end,
        "grain": filters.grain,
        "comparisonMode": filters.comparison_mode,
    }
    for name in ("audience", "device", "channel"):
        values = getattr(filters, name)
        if values:
            params[name] = ",".join(values)
    return params


class DashboardClient:
    """Async client for /api/kpi and /api/insights."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str = "http://localhost:3000",
        api_key: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if self._api_key:
            return {"x-api-key": self._api_key}
        return {}

    async def fetch_kpi(
        self, metric: str, filters: FilterState, token: CancelToken
    ) -> dict[str, Any]:
        """
        Fetch one KPI payload ({"summary": {...}, "notes": [...], ...}).

        Raises DashboardAPIError on HTTP or connection failures.
        """
        return await self._request(
            "GET", "/api/kpi", token, params=kpi_query_params(metric, filters)
        )

    async def fetch_insights(
        self, payload: dict[str, Any], token: CancelToken
    ) -> dict[str, Any]:
        """
        Ask the insights endpoint to analyse one metric series.

        Raises DashboardAPIError on HTTP or connection failures.
        """
        return await self._request("POST", "/api/insights", token, json=payload)

    async def _request(
        self, method: str, path: str, token: CancelToken, **kwargs: Any
    ) -> dict[str, Any]:
        """Send the request, giving up as soon as `token` is cancelled."""
        token.raise_if_cancelled()
        url = f"{self._base_url}{path}"

        request = asyncio.ensure_future(
            self._http.request(
                method, url, headers=self._headers(), timeout=self._timeout, **kwargs
            )
        )
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {request, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            pending = [t for t in (request, cancelled) if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        if request not in done:
            logger.debug("Dashboard request cancelled: %s %s", method, url)
            raise RequestCancelled(path)

        try:
            response = request.result()
        except httpx.HTTPError as exc:
            logger.error("Dashboard request failed: %s %s -> %s", method, url, exc)
            raise DashboardAPIError(f"Connection error: {exc}") from exc

        if response.status_code != 200:
            raise DashboardAPIError(
                f"HTTP {response.status_code}", status_code=response.status_code
            )

        return response.json()
