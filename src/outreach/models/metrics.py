"""Aggregate metric rows: per-entity daily snapshots and historical backfill periods."""
from datetime import date
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class DailyMetric(SQLModel, table=True):
    """Analytics snapshot for one entity on one day (upserted each sync)."""

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "entity_id", "metric_date"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str
    entity_id: int = Field(foreign_key="entity.id", index=True)
    metric_date: date

    sent_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    replied_count: int = 0
    positive_reply_count: int = 0
    bounced_count: int = 0


class HistoricalStat(SQLModel, table=True):
    """
    Tenant-wide statistics for one backfill period.

    Day-wise sources (Smartlead) write period_start == period_end; range
    sources (PhoneBurner usage) write one row per chunk.
    """

    __table_args__ = (UniqueConstraint("tenant_id", "platform", "period_start"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str
    period_start: date
    period_end: date

    sent_count: int = 0
    opened_count: int = 0
    clicked_count: int = 0
    replied_count: int = 0
    bounced_count: int = 0

    calls: int = 0
    calls_connected: int = 0
    talk_time_seconds: int = 0
