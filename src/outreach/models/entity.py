"""Synced entity rows: campaigns/sequences/contacts and their copy structure."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from outreach.models.connection import utcnow


class Entity(SQLModel, table=True):
    """
    Top-level synced object. Smartlead campaigns, Reply.io sequences and
    PhoneBurner contacts all land here, distinguished by platform + kind.
    """

    __table_args__ = (UniqueConstraint("tenant_id", "platform", "platform_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str = Field(index=True)
    platform_id: str = Field(index=True)
    kind: str  # "campaign", "sequence", "contact"
    name: str = ""
    status: Optional[str] = None
    upstream_created_at: Optional[datetime] = None

    # Raw JSON blob of the listing item for reference
    raw_json: Optional[str] = None

    synced_at: datetime = Field(default_factory=utcnow)


class SequenceStep(SQLModel, table=True):
    """One step of an outreach sequence (email #1, follow-up #2, ...)."""

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "entity_id", "step_number"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str
    entity_id: int = Field(foreign_key="entity.id", index=True)
    step_number: int
    step_type: str = "email"
    delay_days: int = 0


class Variant(SQLModel, table=True):
    """A/B copy variant of a sequence step."""

    __table_args__ = (UniqueConstraint("tenant_id", "platform", "platform_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str
    platform_id: str
    entity_id: int = Field(foreign_key="entity.id", index=True)
    step_number: int
    name: str
    label: str = "A"
    subject: Optional[str] = None
    body: str = ""
    body_preview: str = ""
    word_count: int = 0
    personalization_vars: str = "[]"  # JSON list of placeholder names
    is_control: bool = False


class VariantFeatures(SQLModel, table=True):
    """Copy features extracted from a variant's subject and body."""

    id: Optional[int] = Field(default=None, primary_key=True)
    variant_id: int = Field(foreign_key="variant.id", unique=True, index=True)
    tenant_id: str = Field(index=True)
    platform: str

    subject_word_count: int = 0
    subject_spam_score: int = 0
    body_word_count: int = 0
    body_cta_type: str = "no_cta"
    body_tone: str = "direct"
    body_reading_grade: float = 0.0

    # Full feature dict (see outreach.analysis.copy_features)
    features_json: str = "{}"
    extracted_at: datetime = Field(default_factory=utcnow)
