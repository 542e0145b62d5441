"""Pulse — Stored Metric Model (Universal Schema).

Every provider (analytics, SEO competitor data, benchmark aggregates) writes
into this one table. The value column is polymorphic JSON: plain numbers,
numeric strings, `{"value": ...}` payloads, `{"percentage": ...}` payloads or
arrays of channel entries. MetricValueCodec is the only reader that should
interpret it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field

DAILY_MARKER = "-daily-"


class SourceType(str, Enum):
    """Which provider or aggregate a metric row belongs to."""

    CLIENT = "Client"
    COMPETITOR = "Competitor"
    INDUSTRY_AVG = "Industry_Avg"
    CD_AVG = "CD_Avg"
    CD_PORTFOLIO = "CD_Portfolio"


class Granularity(str, Enum):
    """Temporal resolution of a period's stored data."""

    DAILY = "daily"
    MONTHLY = "monthly"
    NONE = "none"


class MetricRecord(SQLModel, table=True):
    """Universal metric record.

    time_period is "YYYY-MM" for monthly rows and
    "YYYY-MM-daily-YYYYMMDD" for daily rows.
    """

    __tablename__ = "metrics"

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: Optional[str] = Field(default=None, index=True)
    competitor_id: Optional[str] = Field(default=None, index=True)
    metric_name: str = Field(index=True, description="Metric key from registry")
    value: Any = Field(sa_column=Column(JSON, nullable=True))
    source_type: SourceType = Field(index=True)
    time_period: str = Field(index=True, description="YYYY-MM or YYYY-MM-daily-YYYYMMDD")
    channel: Optional[str] = Field(default=None, max_length=50)
    business_size: Optional[str] = Field(
        default=None, description="Benchmark segment (Industry_Avg / CD_Avg rows)"
    )
    industry_vertical: Optional[str] = Field(
        default=None, description="Benchmark segment (Industry_Avg / CD_Avg rows)"
    )
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
