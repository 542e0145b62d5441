"""Pulse — Unified Metric Registry.

Defines the canonical set of website-traffic metrics and how each one is
rolled up from daily to monthly granularity. When a provider starts
reporting a new metric, register it here so the rollup, merger and
bucketing engines treat it uniformly.
"""

from enum import Enum
from typing import Dict


class AggregationKind(str, Enum):
    """How daily values of a metric combine into one value."""

    SESSION_WEIGHTED = "session_weighted"  # Σ(value·sessions) / Σ sessions
    RATIO = "ratio"  # Σ sessions / Σ users
    MEAN = "mean"  # Plain arithmetic mean
    DISTRIBUTION = "distribution"  # Per-channel percentage breakdown


class MetricDefinition:
    """Describes a single metric."""

    def __init__(
        self,
        name: str,
        aggregation: AggregationKind,
        unit: str = "",
        description: str = "",
    ):
        self.name = name
        self.aggregation = aggregation
        self.unit = unit
        self.description = description

    @property
    def is_distribution(self) -> bool:
        return self.aggregation == AggregationKind.DISTRIBUTION

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.aggregation.value})>"


BOUNCE_RATE = "Bounce Rate"
SESSION_DURATION = "Session Duration"
PAGES_PER_SESSION = "Pages per Session"
SESSIONS_PER_USER = "Sessions per User"
TRAFFIC_CHANNELS = "Traffic Channels"
DEVICE_DISTRIBUTION = "Device Distribution"


# ─────────────────────────────────────────────
# TRAFFIC METRICS — Canonical Registry
# ─────────────────────────────────────────────

TRAFFIC_METRICS: Dict[str, MetricDefinition] = {
    BOUNCE_RATE: MetricDefinition(
        BOUNCE_RATE,
        AggregationKind.SESSION_WEIGHTED,
        "%",
        "Share of single-page sessions",
    ),
    SESSION_DURATION: MetricDefinition(
        SESSION_DURATION,
        AggregationKind.SESSION_WEIGHTED,
        "seconds",
        "Average engaged session length",
    ),
    PAGES_PER_SESSION: MetricDefinition(
        PAGES_PER_SESSION,
        AggregationKind.SESSION_WEIGHTED,
        "pages",
        "Average pages viewed per session",
    ),
    SESSIONS_PER_USER: MetricDefinition(
        SESSIONS_PER_USER, AggregationKind.RATIO, "ratio", "Sessions / users"
    ),
}


# ─────────────────────────────────────────────
# DISTRIBUTION METRICS — One row per channel/device
# ─────────────────────────────────────────────

DISTRIBUTION_METRICS: Dict[str, MetricDefinition] = {
    TRAFFIC_CHANNELS: MetricDefinition(
        TRAFFIC_CHANNELS,
        AggregationKind.DISTRIBUTION,
        "%",
        "Sessions share by acquisition channel",
    ),
    DEVICE_DISTRIBUTION: MetricDefinition(
        DEVICE_DISTRIBUTION,
        AggregationKind.DISTRIBUTION,
        "%",
        "Sessions share by device category",
    ),
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────

ALL_METRICS = {**TRAFFIC_METRICS, **DISTRIBUTION_METRICS}

# Metrics inspected by the freshness check and rolled up on conversion
TRACKED_METRICS: list[str] = list(TRAFFIC_METRICS.keys())


def get_metric(name: str) -> MetricDefinition | None:
    """Look up a metric by name."""
    return ALL_METRICS.get(name)


def aggregation_for(name: str) -> AggregationKind:
    """Return the rollup kind for a metric; unknown metrics use the mean."""
    metric = get_metric(name)
    return metric.aggregation if metric else AggregationKind.MEAN


def is_distribution_metric(name: str) -> bool:
    return name in DISTRIBUTION_METRICS
