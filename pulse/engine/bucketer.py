"""Pulse — Time Series Bucketer.

Splits one month of daily client data into at most five contiguous chart
buckets ("YYYY-MM-group-N"). Client scalar metrics are aggregated per bucket
with the same formulas as the monthly rollup. Competitor and CD_Avg sources
only exist monthly, so every bucket gets an identical copy of the month's
merged rows for them.
"""

import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from pulse.config import settings
from pulse.engine.periods import parse_daily_period, parse_month_key
from pulse.engine.rollup import aggregate_metric
from pulse.core.metric_registry import is_distribution_metric
from pulse.models.engine_models import NormalizedMetric
from pulse.models.metric_models import MetricRecord, SourceType
from pulse.core.logging import get_logger

logger = get_logger("engine.bucketer")

COMPARISON_SOURCES = (SourceType.COMPETITOR, SourceType.CD_AVG)


@dataclass
class TimeSeries:
    periods: List[str]
    data: Dict[str, List[NormalizedMetric]]


def bucket_key(period_key: str, index: int) -> str:
    return f"{period_key}-group-{index}"


def split_days(day_keys: Sequence[str], max_buckets: int) -> List[List[str]]:
    """Sort day keys and cut them into ≤ max_buckets contiguous runs.

    Run length is ceil(days / max_buckets); the last run may be shorter and
    no run is ever empty.
    """
    ordered = sorted(day_keys)
    if not ordered:
        return []
    group_size = math.ceil(len(ordered) / max_buckets)
    return [ordered[i : i + group_size] for i in range(0, len(ordered), group_size)]


def bucket_month(
    period_key: str,
    daily_records: Sequence[MetricRecord],
    merged_rows: Sequence[NormalizedMetric],
    max_buckets: Optional[int] = None,
) -> Optional[TimeSeries]:
    """Build the bucketed series for a month, or None when there is no daily data."""
    max_buckets = max_buckets or settings.max_time_series_buckets
    year, month = parse_month_key(period_key)

    by_day: Dict[str, List[MetricRecord]] = defaultdict(list)
    for record in daily_records:
        day = parse_daily_period(record.time_period)
        if day is None or (day.year, day.month) != (year, month):
            continue
        by_day[record.time_period].append(record)

    runs = split_days(list(by_day.keys()), max_buckets)
    if not runs:
        logger.warning(
            f"No daily data for {period_key}; cannot build bucketed series",
            extra={"period": period_key},
        )
        return None

    comparison = [
        row
        for row in merged_rows
        if row.source_type in COMPARISON_SOURCES and row.time_period == period_key
    ]

    data: Dict[str, List[NormalizedMetric]] = {}
    for index, days in enumerate(runs, start=1):
        key = bucket_key(period_key, index)
        by_metric: Dict[str, List[MetricRecord]] = defaultdict(list)
        for day in days:
            for record in by_day[day]:
                if is_distribution_metric(record.metric_name):
                    continue
                if record.source_type != SourceType.CLIENT:
                    continue
                by_metric[record.metric_name].append(record)

        rows: List[NormalizedMetric] = []
        for metric_name in sorted(by_metric):
            result = aggregate_metric(metric_name, by_metric[metric_name])
            if result.value is None:
                continue
            rows.append(
                NormalizedMetric(
                    metric_name=metric_name,
                    value=result.value,
                    source_type=SourceType.CLIENT,
                    time_period=key,
                )
            )
        rows.extend(row.model_copy(update={"time_period": key}) for row in comparison)
        data[key] = rows

        logger.debug(
            f"{key}: {days[0]} → {days[-1]} ({len(days)} days)",
            extra={"period": key, "record_count": len(rows)},
        )

    periods = list(data.keys())
    logger.info(
        f"Created {len(periods)} grouped periods for {period_key} "
        f"with {len(comparison)} comparison rows each",
        extra={"period": period_key, "record_count": len(periods)},
    )
    return TimeSeries(periods=periods, data=data)
