"""Pulse — Multi-Source Merger.

Normalizes stored rows from Client, Competitor, Industry_Avg and CD_Avg
sources into one flat stream of NormalizedMetric rows:

- distribution metric with a channel   → one row (percentage path)
- distribution metric without channel  → one row per entry of its array
- scalar metric                        → one row (codec)

Nothing is coalesced here. Rows and entries that cannot be decoded are counted
in MergeDiagnostics and logged, never emitted as zero.
"""

import json
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from pulse.core.errors import DecodeFailure
from pulse.engine.codec import Unparseable, decode, decode_percentage, numeric_value
from pulse.core.metric_registry import DEVICE_DISTRIBUTION, is_distribution_metric
from pulse.models.engine_models import MergeDiagnostics, NormalizedMetric
from pulse.models.metric_models import MetricRecord, SourceType
from pulse.core.logging import get_logger

logger = get_logger("engine.merger")

_ENTRY_VALUE_FIELDS = ("percentage", "value", "sessions")
MAX_SAMPLES = 10


@dataclass
class SourceArrays:
    """Per-period reads for one dashboard request, one list per period."""

    client: List[List[MetricRecord]] = field(default_factory=list)
    competitor: List[List[MetricRecord]] = field(default_factory=list)
    industry: List[List[MetricRecord]] = field(default_factory=list)
    cd_avg: List[List[MetricRecord]] = field(default_factory=list)


@dataclass
class MergeResult:
    rows: List[NormalizedMetric]
    diagnostics: MergeDiagnostics


def _flatten(arrays: Iterable[Sequence[MetricRecord]]) -> List[MetricRecord]:
    return [record for period_rows in arrays for record in period_rows]


def _entry_channel(metric_name: str, entry: Mapping[str, Any]) -> Optional[str]:
    if metric_name == DEVICE_DISTRIBUTION:
        keys = ("device", "name", "channel")
    else:
        keys = ("channel", "name")
    for key in keys:
        if entry.get(key):
            return str(entry[key])
    return None


def _entry_value(entry: Mapping[str, Any]) -> Optional[float]:
    for key in _ENTRY_VALUE_FIELDS:
        if entry.get(key) is not None:
            return numeric_value(decode(entry[key]))
    return None


def _entry_array(raw: Any) -> Optional[list]:
    if isinstance(raw, list):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return None
        return parsed if isinstance(parsed, list) else None
    return None


class _Merge:
    """Accumulates rows and diagnostics across all sources."""

    def __init__(self):
        self.rows: List[NormalizedMetric] = []
        self.records_in = 0
        self.exploded = 0
        self.unparseable: Counter = Counter()
        self.samples: List[str] = []

    def _reject(self, record: MetricRecord, source: SourceType, reason: str) -> None:
        failure = DecodeFailure(record.metric_name, record.time_period, source.value, reason)
        self.unparseable[source.value] += 1
        if len(self.samples) < MAX_SAMPLES:
            self.samples.append(str(failure))
        logger.debug(
            f"Skipped undecodable value: {failure}",
            extra={
                "metric_name": record.metric_name,
                "source_type": source.value,
                "period": record.time_period,
            },
        )

    def _emit(self, record: MetricRecord, source: SourceType, value: float, channel=None):
        self.rows.append(
            NormalizedMetric(
                metric_name=record.metric_name,
                value=value,
                source_type=source,
                time_period=record.time_period,
                channel=channel if channel is not None else record.channel,
                competitor_id=record.competitor_id,
            )
        )

    def add(self, record: MetricRecord, source: SourceType) -> None:
        self.records_in += 1

        if is_distribution_metric(record.metric_name) and record.channel:
            decoded = decode_percentage(record.value)
            if isinstance(decoded, Unparseable):
                self._reject(record, source, decoded.reason)
                return
            self._emit(record, source, numeric_value(decoded))
            return

        if is_distribution_metric(record.metric_name):
            entries = _entry_array(record.value)
            if entries is None:
                self._reject(record, source, "distribution value is not an entry array")
                return
            for entry in entries:
                if not isinstance(entry, Mapping):
                    self._reject(record, source, "entry is not an object")
                    continue
                channel = _entry_channel(record.metric_name, entry)
                value = _entry_value(entry)
                if channel is None or value is None:
                    self._reject(record, source, "entry missing name or value")
                    continue
                self.exploded += 1
                self._emit(record, source, value, channel=channel)
            return

        decoded = decode(record.value)
        if isinstance(decoded, Unparseable):
            self._reject(record, source, decoded.reason)
            return
        self._emit(record, source, numeric_value(decoded))

    def result(self) -> MergeResult:
        total_unparseable = sum(self.unparseable.values())
        diagnostics = MergeDiagnostics(
            records_in=self.records_in,
            rows_out=len(self.rows),
            exploded_entries=self.exploded,
            unparseable=total_unparseable,
            unparseable_by_source=dict(self.unparseable),
            samples=self.samples,
        )
        if total_unparseable:
            logger.warning(
                f"Merger excluded {total_unparseable} undecodable values: {dict(self.unparseable)}",
                extra={"record_count": total_unparseable},
            )
        return MergeResult(rows=self.rows, diagnostics=diagnostics)


def _client_source(record: MetricRecord) -> SourceType:
    try:
        return SourceType(record.source_type)
    except ValueError:
        return SourceType.CLIENT


def merge_sources(sources: SourceArrays) -> MergeResult:
    """Flatten and normalize every source into one stream.

    Client rows keep their own source type (portfolio rows ride along with the
    client read); the other sources are tagged by where they were read from.
    """
    merge = _Merge()
    for record in _flatten(sources.client):
        merge.add(record, _client_source(record))
    for record in _flatten(sources.competitor):
        merge.add(record, SourceType.COMPETITOR)
    for record in _flatten(sources.industry):
        merge.add(record, SourceType.INDUSTRY_AVG)
    for record in _flatten(sources.cd_avg):
        merge.add(record, SourceType.CD_AVG)
    return merge.result()


def merge_records(records: Iterable[MetricRecord]) -> MergeResult:
    """Normalize rows that already carry their final source type."""
    merge = _Merge()
    for record in records:
        merge.add(record, _client_source(record))
    return merge.result()
