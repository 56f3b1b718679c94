"""Leads and engagement events (sends, opens, replies, calls)."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from outreach.models.connection import utcnow


class Lead(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("tenant_id", "platform", "platform_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str
    platform_id: str
    email: Optional[str] = Field(default=None, index=True)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    linkedin_url: Optional[str] = None
    phone: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    email_domain: Optional[str] = None
    email_type: Optional[str] = None  # "personal" | "work"
    status: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class EngagementEvent(SQLModel, table=True):
    """
    One engagement event. idempotency_key is derived from
    (lead id, mapping id, timestamp) so a page fetched twice across
    resumed runs never produces a second row.
    """

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "idempotency_key"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str
    idempotency_key: str = Field(index=True)
    entity_id: Optional[int] = Field(default=None, foreign_key="entity.id", index=True)
    lead_platform_id: Optional[str] = None
    variant_id: Optional[int] = None
    event_type: str  # "sent", "opened", "clicked", "replied", "bounced", "call", ...
    occurred_at: datetime

    reply_text: Optional[str] = None
    reply_sentiment: Optional[str] = None  # "positive" | "negative" | "neutral"

    # Call activity fields (PhoneBurner)
    duration_seconds: Optional[int] = None
    disposition: Optional[str] = None
    recording_url: Optional[str] = None
