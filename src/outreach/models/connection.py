"""Per-(tenant, platform) connection row that owns the sync checkpoint."""
import enum
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on round-trip)."""
    return datetime.utcnow()


class SyncStatus(str, enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    PARTIAL = "partial"
    SUCCESS = "success"
    ERROR = "error"
    STOPPED = "stopped"


class SyncConnection(SQLModel, table=True):
    """
    One row per (tenant, platform). Only one may be active at a time.

    sync_progress holds the JSON checkpoint; its shape is owned by the
    phase pipeline (see outreach.sync.checkpoint). generation is bumped
    on every reset so a continuation started before the reset cannot
    write into the fresh checkpoint.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True)
    platform: str = Field(index=True)  # "smartlead", "replyio", "phoneburner"
    credential_encrypted: str
    is_active: bool = Field(default=True, index=True)

    sync_status: str = Field(default=SyncStatus.IDLE.value)
    sync_progress: str = "{}"
    generation: int = 0

    last_sync_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
