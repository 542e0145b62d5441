"""Pulse — Engine & Output Schemas."""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field

from pulse.models.metric_models import Granularity, SourceType


# ─────────────────────────────────────────────
# FRESHNESS — Planning and status
# ─────────────────────────────────────────────


class PeriodDescriptor(BaseModel):
    """One calendar month in the rolling window, with its target granularity."""

    year: int
    month: int
    period_key: str  # YYYY-MM
    granularity: Granularity


class DataStatus(BaseModel):
    """What is currently stored for one (period, metric). Computed, never persisted."""

    period: str
    metric_name: str
    granularity: Granularity = Granularity.NONE
    record_count: int = 0


class FreshnessRunResult(BaseModel):
    """Outcome of a freshness run for one client."""

    success: bool = True
    periods_processed: int = 0
    daily_data_periods: List[str] = []
    monthly_data_periods: List[str] = []
    errors: List[str] = []
    last_fetched_at: str = ""


# ─────────────────────────────────────────────
# MERGE — Normalized output rows
# ─────────────────────────────────────────────


class NormalizedMetric(BaseModel):
    """A single decoded, source-tagged metric point ready for charting."""

    metric_name: str
    value: float
    source_type: SourceType
    time_period: str
    channel: Optional[str] = None
    competitor_id: Optional[str] = None


class MergeDiagnostics(BaseModel):
    """Counts of what the merger consumed, produced and refused to decode."""

    records_in: int = 0
    rows_out: int = 0
    exploded_entries: int = 0
    unparseable: int = 0
    unparseable_by_source: Dict[str, int] = {}
    samples: List[str] = []  # First few decode failures, for debugging


# ─────────────────────────────────────────────
# DASHBOARD — Response payload
# ─────────────────────────────────────────────


class DeviceDistribution(BaseModel):
    """Device → percentage projection keyed by source."""

    client: Dict[str, float] = {}
    cd_avg: Dict[str, float] = {}


class DashboardPayload(BaseModel):
    """Merged dashboard data, flat or as a time series."""

    client_id: str
    metrics: List[NormalizedMetric] = []
    is_time_series: bool = False
    periods: List[str] = []
    time_series_data: Optional[Dict[str, List[NormalizedMetric]]] = None
    traffic_channel_metrics: List[NormalizedMetric] = []
    device_distribution_metrics: List[NormalizedMetric] = []
    device_distribution: DeviceDistribution = Field(default_factory=DeviceDistribution)
    diagnostics: MergeDiagnostics = Field(default_factory=MergeDiagnostics)
