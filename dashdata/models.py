"""
Pydantic models shared by the services and the HTTP API.
"""

from __future__ import annotations

from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class FilterState(BaseModel):
    """The dashboard's global filter bar."""

    start: str = Field(description="Range start (YYYY-MM-DD)")
    end: str = Field(description="Range end (YYYY-MM-DD)")
    grain: str = "day"
    comparison_mode: str = "yoy"
    audience: list[str] = Field(default_factory=list)
    device: list[str] = Field(default_factory=list)
    channel: list[str] = Field(default_factory=list)


class KpiSummary(BaseModel):
    """Headline value for one KPI scorecard."""

    metric: str
    value: Union[float, str]
    growth_rate: float = Field(description="Change vs comparison period, in percent")
    source: Optional[str] = Field(default=None, description="Data source from the 'Källa:' note")


class TimePoint(BaseModel):
    date: str
    value: float


class InsightsRequest(BaseModel):
    """Input for an AI insight on one metric."""

    start: str
    end: str
    audience: list[str] = Field(default_factory=list)
    device: list[str] = Field(default_factory=list)
    channel: list[str] = Field(default_factory=list)
    series: list[TimePoint] = Field(default_factory=list)
    comparison_series: Optional[list[TimePoint]] = None
    anomalies: list[dict[str, Any]] = Field(default_factory=list)
    distribution_context: Optional[str] = None


class InsightResult(BaseModel):
    insight: dict[str, Any]
    used_openai: bool = True


class FiltersChanged(BaseModel):
    """Body for POST /v1/filters/changed."""

    path: str = "/"
    filters: FilterState
