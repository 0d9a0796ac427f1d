"""Tests for the KPI service (cache integration with a mocked client)."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from dashdata.cache import RequestCache, RequestCancelled
from dashdata.config import AppConfig
from dashdata.dashboard_client import DashboardAPIError, DashboardClient
from dashdata.kpi import KpiService, kpi_cache_key, summary_from_payload
from dashdata.models import FilterState

FILTERS = FilterState(start="2025-01-01", end="2025-01-31", device=["mobile"])


def _payload(current=1234, yoy_pct=12.5, source="GA4"):
    return {
        "summary": {"current": current, "yoyPct": yoy_pct},
        "timeseries": [],
        "notes": ["Beräknat per dag", f"Källa: {source}"],
    }


class TestSummaryFromPayload:
    def test_maps_fields(self):
        summary = summary_from_payload("mau", _payload())
        assert summary.metric == "mau"
        assert summary.value == 1234
        assert summary.growth_rate == 12.5
        assert summary.source == "GA4"

    def test_missing_growth_and_notes(self):
        summary = summary_from_payload("mau", {"summary": {"current": "n/a"}})
        assert summary.value == "n/a"
        assert summary.growth_rate == 0
        assert summary.source is None

    def test_null_growth(self):
        payload = {"summary": {"current": 5, "yoyPct": None}}
        assert summary_from_payload("mau", payload).growth_rate == 0

    def test_malformed(self):
        with pytest.raises(DashboardAPIError, match="Malformed"):
            summary_from_payload("mau", {"timeseries": []})


class TestKpiService:
    def _make_service(self, config=None):
        config = config or AppConfig()
        client = AsyncMock(spec=DashboardClient)
        cache = RequestCache(default_ttl=config.cache_ttl("kpi"))
        return KpiService(config=config, client=client, cache=cache), client, cache

    @pytest.mark.asyncio
    async def test_happy_path(self):
        service, client, cache = self._make_service()
        client.fetch_kpi.return_value = _payload()

        summary = await service.get_summary("mau", FILTERS)

        assert summary.value == 1234
        client.fetch_kpi.assert_awaited_once()
        metric, filters, _token = client.fetch_kpi.await_args.args
        assert metric == "mau"
        assert filters == FILTERS
        assert cache.get_with_meta(kpi_cache_key("mau", FILTERS)) is not None

    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self):
        service, client, _ = self._make_service()
        client.fetch_kpi.return_value = _payload()

        await service.get_summary("mau", FILTERS)
        summary = await service.get_summary("mau", FILTERS)

        assert summary.value == 1234
        assert client.fetch_kpi.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_widgets_share_one_call(self):
        service, client, _ = self._make_service()
        release = asyncio.Event()

        async def slow_fetch(metric, filters, token):
            await release.wait()
            return _payload()

        client.fetch_kpi.side_effect = slow_fetch
        tasks = [
            asyncio.ensure_future(service.get_summary("mau", FILTERS)) for _ in range(3)
        ]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert [r.value for r in results] == [1234, 1234, 1234]
        assert client.fetch_kpi.await_count == 1

    @pytest.mark.asyncio
    async def test_different_filters_are_separate_requests(self):
        service, client, _ = self._make_service()
        client.fetch_kpi.return_value = _payload()

        await service.get_summary("mau", FILTERS)
        await service.get_summary("mau", FILTERS.model_copy(update={"device": []}))

        assert client.fetch_kpi.await_count == 2

    @pytest.mark.asyncio
    async def test_force_refresh(self):
        service, client, _ = self._make_service()
        client.fetch_kpi.side_effect = [_payload(current=1), _payload(current=2)]

        assert (await service.get_summary("mau", FILTERS)).value == 1
        assert (await service.get_summary("mau", FILTERS, force_refresh=True)).value == 2

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self):
        service, client, cache = self._make_service()
        client.fetch_kpi.side_effect = DashboardAPIError("HTTP 500", status_code=500)

        with pytest.raises(DashboardAPIError):
            await service.get_summary("mau", FILTERS)
        assert cache.get_with_meta(kpi_cache_key("mau", FILTERS)) is None

    @pytest.mark.asyncio
    async def test_filters_changed_aborts_in_flight(self):
        service, client, _ = self._make_service()

        async def hanging_fetch(metric, filters, token):
            await token.wait()
            token.raise_if_cancelled()

        client.fetch_kpi.side_effect = hanging_fetch
        pending = asyncio.ensure_future(service.get_summary("mau", FILTERS))
        await asyncio.sleep(0)

        service.filters_changed()

        with pytest.raises(RequestCancelled):
            await pending

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [["not", "a", "dict"], None, {"summary": None}])
    async def test_malformed_body_is_not_cached(self, body):
        service, client, cache = self._make_service()
        client.fetch_kpi.return_value = body

        for _ in range(2):
            with pytest.raises(DashboardAPIError, match="Malformed"):
                await service.get_summary("mau", FILTERS)

        assert client.fetch_kpi.await_count == 2
        assert cache.get_with_meta(kpi_cache_key("mau", FILTERS)) is None
