"""Pulse — Dashboard Query Pipeline.

    cache → concurrent reads (batched, deadline) → merge → coalesce / bucket → cache

The deadline covers reads and merge together. When it elapses the request
fails with QueryTimeoutError; there is no partial payload and nothing is
cached.
"""

import asyncio
import time
from collections import defaultdict
from datetime import date
from typing import Callable, Dict, List, Optional, Sequence

from pulse.cache.query_cache import QueryCache
from pulse.config import settings
from pulse.core.errors import QueryTimeoutError
from pulse.core.metric_registry import (
    DEVICE_DISTRIBUTION,
    TRAFFIC_CHANNELS,
    TRACKED_METRICS,
)
from pulse.engine.bucketer import bucket_month
from pulse.engine.merger import MergeResult, SourceArrays, merge_sources
from pulse.engine.periods import is_last_month_label, resolve_time_period
from pulse.engine.rollup import coalesce_daily_to_monthly
from pulse.models.engine_models import DashboardPayload, DeviceDistribution, NormalizedMetric
from pulse.models.metric_models import MetricRecord, SourceType
from pulse.store.metric_store import ALL_SEGMENTS, MetricStore
from pulse.core.logging import get_logger

logger = get_logger("engine.dashboard")


def _chunks(items: Sequence[str], size: int) -> List[List[str]]:
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def group_by_period(rows: Sequence[NormalizedMetric]) -> Dict[str, List[NormalizedMetric]]:
    grouped: Dict[str, List[NormalizedMetric]] = defaultdict(list)
    for row in rows:
        grouped[row.time_period].append(row)
    return dict(sorted(grouped.items()))


def project_devices(rows: Sequence[NormalizedMetric]) -> DeviceDistribution:
    """Device → percentage for the client and the CD average."""
    projection = DeviceDistribution()
    for row in rows:
        if row.metric_name != DEVICE_DISTRIBUTION or not row.channel:
            continue
        if row.source_type == SourceType.CLIENT:
            projection.client[row.channel] = row.value
        elif row.source_type == SourceType.CD_AVG:
            projection.cd_avg[row.channel] = row.value
    return projection


class DashboardService:
    """Builds the merged dashboard payload for one client and time range."""

    def __init__(
        self,
        store: MetricStore,
        cache: QueryCache,
        batch_size: Optional[int] = None,
        batch_threshold: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        extended_timeout_seconds: Optional[float] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.store = store
        self.cache = cache
        self._today = today or date.today
        self.batch_size = batch_size or settings.query_batch_size
        self.batch_threshold = (
            settings.query_batch_threshold if batch_threshold is None else batch_threshold
        )
        self.timeout_seconds = timeout_seconds or settings.query_timeout_seconds
        self.extended_timeout_seconds = (
            extended_timeout_seconds or settings.query_timeout_extended_seconds
        )

    def deadline_for(self, period_count: int) -> float:
        if period_count > self.batch_threshold:
            return self.extended_timeout_seconds
        return self.timeout_seconds

    # ── Reads ──

    async def _read_period(self, client_id: str, period: str, filters: Dict[str, str]):
        return await asyncio.gather(
            self.store.get_metrics_by_client(client_id, period),
            self.store.get_metrics_by_competitors(client_id, period),
            self.store.get_filtered_industry_metrics(period, filters),
            self.store.get_filtered_cd_avg_metrics(period, filters),
        )

    async def read_sources(
        self, client_id: str, periods: Sequence[str], filters: Dict[str, str]
    ) -> SourceArrays:
        """Fan out the four reads per period, in batches above the threshold."""
        if len(periods) > self.batch_threshold:
            batches = _chunks(periods, self.batch_size)
            logger.info(
                f"Batching {len(periods)} periods into {len(batches)} batches of {self.batch_size}",
                extra={"client_id": client_id},
            )
        else:
            batches = [list(periods)]

        sources = SourceArrays()
        for batch in batches:
            results = await asyncio.gather(
                *(self._read_period(client_id, period, filters) for period in batch)
            )
            for client, competitor, industry, cd_avg in results:
                sources.client.append(list(client))
                sources.competitor.append(list(competitor))
                sources.industry.append(list(industry))
                sources.cd_avg.append(list(cd_avg))
        return sources

    # ── Assembly ──

    async def _assemble(
        self,
        client_id: str,
        periods: List[str],
        filters: Dict[str, str],
        last_month: bool,
    ) -> DashboardPayload:
        sources = await self.read_sources(client_id, periods, filters)

        daily: List[MetricRecord] = []
        if last_month and len(periods) == 1:
            target = periods[0]
            daily = await self.store.get_metrics_for_time_period_pattern(
                client_id, f"{target}-daily-%"
            )
            has_monthly = any(
                record.metric_name in TRACKED_METRICS
                and record.source_type == SourceType.CLIENT
                and record.time_period == target
                for record in sources.client[0]
            )
            if not has_monthly:
                scalar_daily = [r for r in daily if r.metric_name in TRACKED_METRICS]
                if scalar_daily:
                    sources.client[0].extend(coalesce_daily_to_monthly(scalar_daily, target))
                else:
                    logger.warning(
                        f"No monthly or daily client data for {target}",
                        extra={"client_id": client_id, "period": target},
                    )

        merged: MergeResult = merge_sources(sources)
        rows = merged.rows

        payload = DashboardPayload(
            client_id=client_id,
            metrics=rows,
            periods=list(periods),
            traffic_channel_metrics=[r for r in rows if r.metric_name == TRAFFIC_CHANNELS],
            device_distribution_metrics=[
                r for r in rows if r.metric_name == DEVICE_DISTRIBUTION
            ],
            device_distribution=project_devices(rows),
            diagnostics=merged.diagnostics,
        )

        if len(periods) > 1 or last_month:
            payload.is_time_series = True
            payload.time_series_data = group_by_period(rows)

        if last_month and len(periods) == 1 and daily:
            series = bucket_month(periods[0], daily, rows)
            if series is not None:
                payload.periods = series.periods
                payload.time_series_data = series.data
        elif last_month and len(periods) == 1:
            logger.warning(
                f"No daily data for {periods[0]}: falling back to single monthly points",
                extra={"client_id": client_id, "period": periods[0]},
            )

        return payload

    async def get_dashboard(
        self,
        client_id: str,
        time_period: str = "Last Month",
        periods: Optional[Sequence[str]] = None,
        business_size: str = ALL_SEGMENTS,
        industry_vertical: str = ALL_SEGMENTS,
    ) -> DashboardPayload:
        """Merged dashboard payload for a label or an explicit list of month keys.

        Raises:
            ValueError: unknown label or malformed range.
            QueryTimeoutError: reads and merge did not finish within the deadline.
        """
        period_list = list(periods) if periods else resolve_time_period(time_period, self._today())
        # Explicit month keys always get the monthly shape
        last_month = not periods and is_last_month_label(time_period) and len(period_list) == 1
        filters = {"business_size": business_size, "industry_vertical": industry_vertical}

        cache_key = QueryCache.dashboard_key(
            client_id, period_list, business_size, industry_vertical, bucketed=last_month
        )
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Cache hit: {cache_key}", extra={"client_id": client_id})
            return cached

        deadline = self.deadline_for(len(period_list))
        started = time.perf_counter()
        try:
            payload = await asyncio.wait_for(
                self._assemble(client_id, period_list, filters, last_month),
                timeout=deadline,
            )
        except asyncio.TimeoutError as e:
            logger.error(
                f"Dashboard query timed out after {deadline}s",
                extra={"client_id": client_id, "record_count": len(period_list)},
            )
            raise QueryTimeoutError(deadline, len(period_list)) from e

        self.cache.set(cache_key, payload)
        logger.info(
            f"Dashboard built: {len(payload.metrics)} rows over {len(period_list)} periods",
            extra={
                "client_id": client_id,
                "record_count": len(payload.metrics),
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return payload
