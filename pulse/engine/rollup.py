"""Pulse — Granularity Converter.

Rolls daily metric rows up into one monthly value:

- Session-weighted averages (Bounce Rate, Session Duration, Pages per Session):
  Σ(value·sessions) / Σ sessions, a row without sessions weighs 1.
- Sessions per User: Σ sessions / Σ users; a plain mean of values only when
  no row carries either field.
- Anything else: arithmetic mean.

A zero denominator yields 0. Undecodable rows are left out and counted; they
never contribute a zero.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from pulse.engine.codec import decode, numeric_value, read_weight
from pulse.core.metric_registry import AggregationKind, aggregation_for
from pulse.models.metric_models import MetricRecord, SourceType
from pulse.store.metric_store import MetricStore
from pulse.engine.periods import daily_prefix
from pulse.core.errors import ConversionFailure
from pulse.core.logging import get_logger

logger = get_logger("engine.rollup")


@dataclass
class Aggregate:
    """Result of aggregating one metric's rows."""

    value: Optional[float]
    used: int = 0
    skipped: int = 0


@dataclass
class ConversionOutcome:
    metric_name: str
    period: str
    success: bool
    daily_count: int = 0
    value: Optional[float] = None
    error: str = ""


@dataclass
class PeriodConversion:
    period: str
    outcomes: List[ConversionOutcome] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(o.success for o in self.outcomes)

    @property
    def errors(self) -> List[str]:
        return [o.error for o in self.outcomes if not o.success]


def _weighted(points: List[tuple]) -> float:
    total_weight = 0.0
    total = 0.0
    for value, raw in points:
        sessions = read_weight(raw, "sessions")
        weight = 1.0 if sessions is None else sessions
        total += value * weight
        total_weight += weight
    return total / total_weight if total_weight > 0 else 0.0


def _has_counts(raw) -> bool:
    return read_weight(raw, "sessions") is not None or read_weight(raw, "users") is not None


def _ratio(points: List[tuple]) -> float:
    if not any(_has_counts(raw) for _, raw in points):
        return sum(value for value, _ in points) / len(points)

    total_sessions = 0.0
    total_users = 0.0
    for _, raw in points:
        sessions = read_weight(raw, "sessions")
        users = read_weight(raw, "users")
        if sessions is not None:
            total_sessions += sessions
        if users is not None:
            total_users += users
    return total_sessions / total_users if total_users > 0 else 0.0


def aggregate_metric(metric_name: str, records: Sequence[MetricRecord]) -> Aggregate:
    """Aggregate one metric's daily rows using its registered formula."""
    kind = aggregation_for(metric_name)
    points: List[tuple] = []
    skipped = 0
    for record in records:
        number = numeric_value(decode(record.value))
        # Session/user counts alone are enough for the ratio formula
        if number is None and not (kind == AggregationKind.RATIO and _has_counts(record.value)):
            skipped += 1
            continue
        points.append((number, record.value))

    if not points:
        return Aggregate(value=None, used=0, skipped=skipped)

    if kind == AggregationKind.SESSION_WEIGHTED:
        value = _weighted(points)
    elif kind == AggregationKind.RATIO:
        value = _ratio(points)
    else:
        value = sum(v for v, _ in points) / len(points)

    return Aggregate(value=value, used=len(points), skipped=skipped)


def coalesce_daily_to_monthly(
    records: Sequence[MetricRecord], target_month: str
) -> List[MetricRecord]:
    """In-memory rollup grouped by (metric, source type); nothing is persisted."""
    grouped: Dict[tuple, List[MetricRecord]] = defaultdict(list)
    for record in records:
        grouped[(record.metric_name, record.source_type)].append(record)

    monthly: List[MetricRecord] = []
    for (metric_name, source_type), rows in grouped.items():
        result = aggregate_metric(metric_name, rows)
        if result.value is None:
            logger.warning(
                f"No decodable daily rows for {metric_name} in {target_month}",
                extra={"metric_name": metric_name, "period": target_month},
            )
            continue
        monthly.append(
            MetricRecord(
                client_id=rows[0].client_id,
                competitor_id=rows[0].competitor_id,
                metric_name=metric_name,
                value={"value": result.value},
                source_type=source_type,
                time_period=target_month,
                channel=rows[0].channel,
            )
        )

    logger.info(
        f"Coalesced {len(records)} daily metrics into {len(monthly)} monthly metrics for {target_month}",
        extra={"period": target_month, "record_count": len(monthly)},
    )
    return monthly


class GranularityConverter:
    """Replaces stored daily rows with their monthly rollup."""

    def __init__(self, store: MetricStore):
        self.store = store

    async def convert_metric(
        self, client_id: str, period: str, metric_name: str
    ) -> ConversionOutcome:
        """Convert one (metric, period) unit. Never raises; failures are reported."""
        try:
            daily = await self.store.get_metrics_for_period(
                client_id, daily_prefix(period), metric_name
            )
            if not daily:
                return ConversionOutcome(metric_name, period, success=True)

            result = aggregate_metric(metric_name, daily)
            if result.value is None:
                raise ConversionFailure(
                    metric_name, period, f"none of {len(daily)} daily rows decodable"
                )

            monthly = MetricRecord(
                client_id=client_id,
                metric_name=metric_name,
                value={"value": result.value},
                source_type=SourceType.CLIENT,
                time_period=period,
            )
            removed = await self.store.replace_with_rollup(
                client_id, period, metric_name, monthly
            )
            logger.info(
                f"Converted {removed} daily records to 1 monthly record for {metric_name} "
                f"({result.skipped} undecodable)",
                extra={"client_id": client_id, "period": period, "metric_name": metric_name},
            )
            return ConversionOutcome(
                metric_name, period, success=True, daily_count=len(daily), value=result.value
            )
        except Exception as e:
            logger.error(
                f"Conversion failed for {metric_name} @ {period}: {e}",
                extra={"client_id": client_id, "period": period, "metric_name": metric_name},
            )
            return ConversionOutcome(metric_name, period, success=False, error=str(e))

    async def convert_period(
        self, client_id: str, period: str, metric_names: Sequence[str]
    ) -> PeriodConversion:
        """Convert every tracked metric of a period, one unit at a time."""
        conversion = PeriodConversion(period=period)
        for metric_name in metric_names:
            conversion.outcomes.append(
                await self.convert_metric(client_id, period, metric_name)
            )
        return conversion
