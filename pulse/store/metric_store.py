"""Pulse — Metric Store.

Async interface over persisted MetricRecords, plus the SQLModel-backed
implementation. Queries run in a worker thread so that the dashboard's
concurrent reads do not block the event loop.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import Engine, delete, or_
from sqlmodel import Session, col, select

from pulse.engine.codec import NumberValue, decode
from pulse.core.metric_registry import PAGES_PER_SESSION, SESSIONS_PER_USER
from pulse.models.metric_models import DAILY_MARKER, MetricRecord, SourceType
from pulse.core.logging import get_logger

logger = get_logger("store.metrics")

ALL_SEGMENTS = "All"


class MetricStore(ABC):
    """Persistence collaborator used by the freshness and dashboard engines."""

    @abstractmethod
    async def get_metrics_for_period(
        self, client_id: str, time_period: str, metric_name: str
    ) -> List[MetricRecord]:
        """Client rows for one metric in a period.

        A daily prefix ("YYYY-MM-daily") matches every daily row of that month;
        anything else matches exactly.
        """
        ...

    @abstractmethod
    async def get_metrics_by_client(
        self, client_id: str, time_period: str
    ) -> List[MetricRecord]:
        """Client-owned rows (plus portfolio rows) for one exact period."""
        ...

    @abstractmethod
    async def get_metrics_by_competitors(
        self, client_id: str, time_period: str
    ) -> List[MetricRecord]:
        ...

    @abstractmethod
    async def get_filtered_industry_metrics(
        self, time_period: str, filters: Optional[Dict[str, str]] = None
    ) -> List[MetricRecord]:
        ...

    @abstractmethod
    async def get_filtered_cd_avg_metrics(
        self, time_period: str, filters: Optional[Dict[str, str]] = None
    ) -> List[MetricRecord]:
        ...

    @abstractmethod
    async def get_metrics_for_time_period_pattern(
        self, client_id: str, pattern: str
    ) -> List[MetricRecord]:
        """Client rows whose time_period matches a SQL LIKE pattern."""
        ...

    @abstractmethod
    async def create_metric(self, record: MetricRecord) -> None:
        ...

    @abstractmethod
    async def delete_metrics_for_period(
        self, client_id: str, time_period: str, metric_name: str
    ) -> int:
        """Delete client rows for one metric in a period; returns rows removed."""
        ...

    @abstractmethod
    async def replace_with_rollup(
        self, client_id: str, period: str, metric_name: str, monthly: MetricRecord
    ) -> int:
        """Insert the monthly row, then delete that metric's daily rows.

        Any older monthly row for the same metric is replaced. All steps
        commit together or not at all. Returns daily rows removed.
        """
        ...


# ─────────────────────────────────────────────
# SQLMODEL IMPLEMENTATION
# ─────────────────────────────────────────────


def _period_clause(time_period: str):
    if time_period.endswith(DAILY_MARKER.rstrip("-")):
        return col(MetricRecord.time_period).like(f"{time_period}-%")
    return MetricRecord.time_period == time_period


def _segment_clauses(filters: Optional[Dict[str, str]]) -> list:
    filters = filters or {}
    clauses = []
    size = filters.get("business_size")
    vertical = filters.get("industry_vertical")
    if size and size != ALL_SEGMENTS:
        clauses.append(MetricRecord.business_size == size)
    if vertical and vertical != ALL_SEGMENTS:
        clauses.append(MetricRecord.industry_vertical == vertical)
    return clauses


def _round_benchmark(metric_name: str, value: float) -> float:
    if metric_name in (PAGES_PER_SESSION, SESSIONS_PER_USER):
        return round(value, 1)
    return float(round(value))


def average_benchmarks(rows: List[MetricRecord], time_period: str) -> List[MetricRecord]:
    """Collapse segment benchmark rows into one average per (metric, channel).

    Only plain numeric rows are averaged; anything else (distribution arrays,
    percentage payloads) passes through for the merger to decode.
    """
    grouped: Dict[tuple, List[float]] = defaultdict(list)
    passthrough: List[MetricRecord] = []
    for row in rows:
        decoded = decode(row.value)
        if isinstance(decoded, NumberValue) and row.channel is None:
            grouped[(row.metric_name, row.source_type)].append(decoded.value)
        else:
            passthrough.append(row)

    averaged = [
        MetricRecord(
            metric_name=metric_name,
            value=_round_benchmark(metric_name, sum(values) / len(values)),
            source_type=source_type,
            time_period=time_period,
        )
        for (metric_name, source_type), values in grouped.items()
    ]
    return averaged + passthrough


class SqlMetricStore(MetricStore):
    """MetricStore backed by the SQLModel `metrics` table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _all(self, statement) -> List[MetricRecord]:
        with Session(self.engine) as session:
            rows = list(session.exec(statement).all())
            for row in rows:
                session.expunge(row)
            return rows

    async def get_metrics_for_period(self, client_id, time_period, metric_name):
        statement = select(MetricRecord).where(
            MetricRecord.client_id == client_id,
            col(MetricRecord.competitor_id).is_(None),
            MetricRecord.metric_name == metric_name,
            _period_clause(time_period),
        )
        return await asyncio.to_thread(self._all, statement)

    async def get_metrics_by_client(self, client_id, time_period):
        statement = select(MetricRecord).where(
            MetricRecord.time_period == time_period,
            or_(
                (MetricRecord.client_id == client_id)
                & col(MetricRecord.competitor_id).is_(None),
                col(MetricRecord.client_id).is_(None)
                & (MetricRecord.source_type == SourceType.CD_PORTFOLIO),
            ),
        )
        return await asyncio.to_thread(self._all, statement)

    async def get_metrics_by_competitors(self, client_id, time_period):
        statement = select(MetricRecord).where(
            MetricRecord.client_id == client_id,
            col(MetricRecord.competitor_id).is_not(None),
            MetricRecord.time_period == time_period,
        )
        return await asyncio.to_thread(self._all, statement)

    async def get_filtered_industry_metrics(self, time_period, filters=None):
        statement = select(MetricRecord).where(
            MetricRecord.source_type == SourceType.INDUSTRY_AVG,
            MetricRecord.time_period == time_period,
            *_segment_clauses(filters),
        )
        rows = await asyncio.to_thread(self._all, statement)
        return average_benchmarks(rows, time_period)

    async def get_filtered_cd_avg_metrics(self, time_period, filters=None):
        statement = select(MetricRecord).where(
            MetricRecord.source_type == SourceType.CD_AVG,
            MetricRecord.time_period == time_period,
            *_segment_clauses(filters),
        )
        return await asyncio.to_thread(self._all, statement)

    async def get_metrics_for_time_period_pattern(self, client_id, pattern):
        statement = select(MetricRecord).where(
            MetricRecord.client_id == client_id,
            col(MetricRecord.competitor_id).is_(None),
            col(MetricRecord.time_period).like(pattern),
        )
        return await asyncio.to_thread(self._all, statement)

    def _create(self, record: MetricRecord) -> None:
        with Session(self.engine) as session:
            session.add(record)
            session.commit()
            session.refresh(record)
            session.expunge(record)

    async def create_metric(self, record):
        await asyncio.to_thread(self._create, record)

    def _delete_statement(self, client_id: str, time_period: str, metric_name: str):
        return delete(MetricRecord).where(
            MetricRecord.client_id == client_id,
            col(MetricRecord.competitor_id).is_(None),
            MetricRecord.metric_name == metric_name,
            _period_clause(time_period),
        )

    def _delete(self, client_id: str, time_period: str, metric_name: str) -> int:
        with Session(self.engine) as session:
            result = session.connection().execute(
                self._delete_statement(client_id, time_period, metric_name)
            )
            session.commit()
            return result.rowcount or 0

    async def delete_metrics_for_period(self, client_id, time_period, metric_name):
        return await asyncio.to_thread(self._delete, client_id, time_period, metric_name)

    def _replace(
        self, client_id: str, period: str, metric_name: str, monthly: MetricRecord
    ) -> int:
        daily_prefix = f"{period}{DAILY_MARKER.rstrip('-')}"
        with Session(self.engine) as session:
            try:
                session.add(monthly)
                session.flush()
                # Stale monthly rows left by an interrupted upgrade
                session.connection().execute(
                    self._delete_statement(client_id, period, metric_name).where(
                        MetricRecord.id != monthly.id
                    )
                )
                result = session.connection().execute(
                    self._delete_statement(client_id, daily_prefix, metric_name)
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
            session.refresh(monthly)
            session.expunge(monthly)
            return result.rowcount or 0

    async def replace_with_rollup(self, client_id, period, metric_name, monthly):
        return await asyncio.to_thread(
            self._replace, client_id, period, metric_name, monthly
        )
