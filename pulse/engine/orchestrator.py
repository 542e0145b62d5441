"""Pulse — Freshness Orchestrator.

Runs the rolling-window maintenance for one client:
  plan periods → inspect stored status → resolve → fetch | convert | skip

Periods are processed one at a time through a semaphore shared by every run
of the service, because the upstream analytics API is rate limited. Two runs
asking for the same (client, period) at once share a single in-flight task.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from pulse.cache.query_cache import QueryCache
from pulse.config import settings
from pulse.connectors.fetch_provider import FetchProvider
from pulse.core.errors import FetchFailure
from pulse.core.metric_registry import TRACKED_METRICS
from pulse.engine.freshness import FreshnessAction, FreshnessDecision, resolve_freshness
from pulse.engine.periods import daily_prefix, month_bounds, plan_periods
from pulse.engine.rollup import GranularityConverter
from pulse.models.engine_models import DataStatus, FreshnessRunResult, PeriodDescriptor
from pulse.models.metric_models import Granularity
from pulse.store.metric_store import MetricStore
from pulse.core.logging import get_logger

logger = get_logger("engine.orchestrator")

CLIENT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,100}$")


def validate_client_id(client_id: str) -> str:
    if not isinstance(client_id, str) or not CLIENT_ID_PATTERN.match(client_id):
        raise ValueError("Invalid clientId format")
    return client_id


@dataclass
class PeriodOutcome:
    """What happened to one period during a run."""

    period: str
    action: FreshnessAction
    success: bool
    granularity: Granularity = Granularity.NONE
    error: str = ""


class FreshnessService:
    """Keeps a client's rolling window at the right granularity."""

    def __init__(
        self,
        store: MetricStore,
        provider: FetchProvider,
        converter: Optional[GranularityConverter] = None,
        cache: Optional[QueryCache] = None,
        concurrency: Optional[int] = None,
        metric_names: Sequence[str] = tuple(TRACKED_METRICS),
        today: Optional[Callable[[], date]] = None,
    ):
        self.store = store
        self.provider = provider
        self.converter = converter or GranularityConverter(store)
        self.cache = cache
        self.metric_names = list(metric_names)
        self._today = today or date.today
        self._semaphore = asyncio.Semaphore(concurrency or settings.fetch_concurrency)
        self._in_flight: Dict[Tuple[str, str, bool], asyncio.Task] = {}

    # ── Inspection ──

    async def inspect_period(self, client_id: str, period_key: str) -> List[DataStatus]:
        """Status of every tracked metric for one period (daily wins over monthly)."""
        statuses: List[DataStatus] = []
        for metric_name in self.metric_names:
            daily = await self.store.get_metrics_for_period(
                client_id, daily_prefix(period_key), metric_name
            )
            monthly = await self.store.get_metrics_for_period(client_id, period_key, metric_name)
            if daily:
                granularity, count = Granularity.DAILY, len(daily)
            elif monthly:
                granularity, count = Granularity.MONTHLY, len(monthly)
            else:
                granularity, count = Granularity.NONE, 0
            statuses.append(
                DataStatus(
                    period=period_key,
                    metric_name=metric_name,
                    granularity=granularity,
                    record_count=count,
                )
            )
        return statuses

    async def _decide(
        self, client_id: str, period: PeriodDescriptor, force: bool
    ) -> FreshnessDecision:
        if force:
            logger.info(
                f"Force fetching {period.period_key}: bypassing stored status",
                extra={"client_id": client_id, "period": period.period_key},
            )
            return FreshnessDecision(FreshnessAction.FETCH, "Force mode: bypassing stored status")
        try:
            statuses = await self.inspect_period(client_id, period.period_key)
        except Exception as e:
            logger.warning(
                f"Status inspection failed for {period.period_key}: {e}; fetching",
                extra={"client_id": client_id, "period": period.period_key},
            )
            statuses = []
        return resolve_freshness(period, statuses)

    # ── Actions ──

    async def _fetch(self, client_id: str, period: PeriodDescriptor) -> None:
        start_date, end_date = month_bounds(period.year, period.month)
        logger.info(
            f"Fetching {period.granularity.value} data for {period.period_key}",
            extra={"client_id": client_id, "period": period.period_key},
        )
        stored = await self.provider.fetch_and_store_monthly_data(
            client_id, period.period_key, start_date, end_date, period.granularity
        )
        if not stored:
            raise FetchFailure(period.period_key)

    async def _supersede(self, client_id: str, period: PeriodDescriptor) -> int:
        """Drop the other granularity of each tracked metric once the target exists."""
        target = period.granularity
        keep_key = daily_prefix(period.period_key) if target == Granularity.DAILY else period.period_key
        drop_key = period.period_key if target == Granularity.DAILY else daily_prefix(period.period_key)

        removed = 0
        for metric_name in self.metric_names:
            kept = await self.store.get_metrics_for_period(client_id, keep_key, metric_name)
            if not kept:
                continue
            removed += await self.store.delete_metrics_for_period(client_id, drop_key, metric_name)
        if removed:
            logger.info(
                f"Superseded {removed} stale rows for {period.period_key} "
                f"(kept {target.value})",
                extra={"client_id": client_id, "period": period.period_key, "record_count": removed},
            )
        return removed

    async def _process(
        self, client_id: str, period: PeriodDescriptor, force: bool
    ) -> PeriodOutcome:
        decision = await self._decide(client_id, period, force)
        key = period.period_key

        if decision.action == FreshnessAction.SKIP:
            logger.debug(f"Skipping {key}: {decision.reason}")
            return PeriodOutcome(key, decision.action, True, decision.existing)

        if decision.action == FreshnessAction.CONVERT:
            logger.info(
                f"Converting {key}: {decision.reason}",
                extra={"client_id": client_id, "period": key},
            )
            conversion = await self.converter.convert_period(client_id, key, self.metric_names)
            if not conversion.success:
                return PeriodOutcome(
                    key, decision.action, False, error="; ".join(conversion.errors)
                )
            return PeriodOutcome(key, decision.action, True, Granularity.MONTHLY)

        # FETCH or UPGRADE
        try:
            await self._fetch(client_id, period)
            await self._supersede(client_id, period)
        except Exception as e:
            logger.error(
                f"Failed to process {key}: {e}",
                extra={"client_id": client_id, "period": key},
            )
            return PeriodOutcome(key, decision.action, False, error=str(e))
        return PeriodOutcome(key, decision.action, True, period.granularity)

    async def _guarded(
        self, client_id: str, period: PeriodDescriptor, force: bool
    ) -> PeriodOutcome:
        async with self._semaphore:
            return await self._process(client_id, period, force)

    async def process_period(
        self, client_id: str, period: PeriodDescriptor, force: bool = False
    ) -> PeriodOutcome:
        """Process one period, joining an identical in-flight task if there is one.

        Forced work never joins a non-forced task, which may decide to skip.
        """
        key = (client_id, period.period_key, force)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._guarded(client_id, period, force))
            self._in_flight[key] = task

            def _release(done: asyncio.Task, key=key) -> None:
                if self._in_flight.get(key) is done:
                    del self._in_flight[key]

            task.add_done_callback(_release)
        else:
            logger.info(
                f"Joining in-flight work for {period.period_key}",
                extra={"client_id": client_id, "period": period.period_key},
            )
        return await asyncio.shield(task)

    # ── Run ──

    async def run(self, client_id: str, force: bool = False) -> FreshnessRunResult:
        """Bring every period of the rolling window up to date for a client."""
        validate_client_id(client_id)
        started = time.perf_counter()
        result = FreshnessRunResult(last_fetched_at=datetime.now(timezone.utc).isoformat())

        planned = 0
        try:
            periods = plan_periods(today=self._today())
            planned = len(periods)
            logger.info(
                f"Starting freshness run for {len(periods)} periods (force={force})",
                extra={"client_id": client_id},
            )
            for period in periods:
                try:
                    outcome = await self.process_period(client_id, period, force)
                except Exception as e:
                    result.errors.append(f"Error processing {period.period_key}: {e}")
                    continue
                if not outcome.success:
                    result.errors.append(
                        f"Failed to process {outcome.period}: {outcome.error or 'Unknown error'}"
                    )
                    continue
                result.periods_processed += 1
                if outcome.granularity == Granularity.DAILY:
                    result.daily_data_periods.append(outcome.period)
                else:
                    result.monthly_data_periods.append(outcome.period)
        except Exception as e:
            logger.error(f"Freshness run failed: {e}", extra={"client_id": client_id})
            result.success = False
            result.errors.append(f"Overall fetch failed: {e}")

        if result.success and self.cache is not None:
            self.cache.invalidate_client(client_id)

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.info(
            f"Freshness run completed: {result.periods_processed}/{planned} "
            f"periods processed, {len(result.errors)} errors",
            extra={"client_id": client_id, "duration_ms": duration_ms},
        )
        return result
