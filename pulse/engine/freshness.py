"""Pulse — Data Freshness Resolver.

Decides, per period, whether stored data must be fetched, converted, or can
be left alone:

    existing  target   action
    none      any      FETCH
    daily     daily    SKIP
    monthly   monthly  SKIP
    daily     monthly  CONVERT (rollup, no fetch)
    monthly   daily    UPGRADE (fetch daily, supersede monthly)

Status rows that cannot be classified fail open to FETCH, so real work is
never silently skipped.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from pulse.models.engine_models import DataStatus, PeriodDescriptor
from pulse.models.metric_models import Granularity
from pulse.core.logging import get_logger

logger = get_logger("engine.freshness")


class FreshnessAction(str, Enum):
    FETCH = "fetch"
    SKIP = "skip"
    CONVERT = "convert"
    UPGRADE = "upgrade"


@dataclass(frozen=True)
class FreshnessDecision:
    action: FreshnessAction
    reason: str
    existing: Granularity = Granularity.NONE


def _is_corrupt(period: PeriodDescriptor, status: DataStatus) -> bool:
    if status.period != period.period_key:
        return True
    if not isinstance(status.granularity, Granularity):
        return True
    if status.record_count < 0:
        return True
    if status.granularity == Granularity.NONE:
        return status.record_count != 0
    return status.record_count == 0


def _existing_granularity(statuses: list[DataStatus]) -> Granularity:
    """Daily anywhere wins; otherwise monthly anywhere; otherwise none."""
    if any(s.granularity == Granularity.DAILY for s in statuses):
        return Granularity.DAILY
    if any(s.granularity == Granularity.MONTHLY for s in statuses):
        return Granularity.MONTHLY
    return Granularity.NONE


def resolve_freshness(
    period: PeriodDescriptor,
    statuses: Optional[Iterable[DataStatus]],
) -> FreshnessDecision:
    """Classify one period against what is already stored for it."""
    try:
        rows = list(statuses or [])
        corrupt = [s for s in rows if _is_corrupt(period, s)]
    except (TypeError, AttributeError) as e:
        logger.warning(f"Unreadable status for {period.period_key}: {e}")
        return FreshnessDecision(FreshnessAction.FETCH, "Unreadable status; fetching")

    if corrupt:
        logger.warning(
            f"Corrupt status for {period.period_key} ({len(corrupt)} rows); fetching",
            extra={"period": period.period_key},
        )
        return FreshnessDecision(FreshnessAction.FETCH, "Corrupt status; fetching")

    existing = _existing_granularity(rows)
    target = period.granularity

    if existing == Granularity.NONE:
        return FreshnessDecision(FreshnessAction.FETCH, "No existing data found")

    if existing == target:
        return FreshnessDecision(
            FreshnessAction.SKIP, "Correct data type already exists", existing
        )

    if existing == Granularity.DAILY and target == Granularity.MONTHLY:
        return FreshnessDecision(
            FreshnessAction.CONVERT, "Replacing daily with monthly rollup", existing
        )

    if existing == Granularity.MONTHLY and target == Granularity.DAILY:
        return FreshnessDecision(
            FreshnessAction.UPGRADE, "Upgrading monthly to daily data", existing
        )

    return FreshnessDecision(FreshnessAction.FETCH, "Data type mismatch", existing)
