"""Status and progress reporting for the UI's polling endpoint."""
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel
from sqlmodel import Session, select

from outreach.models.connection import SyncConnection, SyncStatus
from outreach.sync.checkpoint import Checkpoint
from outreach.sync.phases import phase_by_name

# Percent range covered by each phase; listing is the 0% floor of historical
PHASE_RANGES = {
    "listing": (0.0, 0.0),
    "historical": (0.0, 10.0),
    "entities": (10.0, 60.0),
    "subentities": (60.0, 75.0),
    "events": (75.0, 99.0),
}


class SyncStatusView(BaseModel):
    tenant_id: str
    platform: str
    sync_status: str
    phase: Optional[str] = None
    percent: float = 0.0
    counts: Dict[str, int] = {}
    message: Optional[str] = None
    batch_number: Optional[int] = None
    errors_count: int = 0
    heartbeat: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None


def estimate_percent(checkpoint: Checkpoint) -> float:
    """
    Rough completion estimate from the checkpoint.

    success → 100, idle → 0; otherwise the active phase's range scaled by
    its cursor position. Never reports 100 for an unfinished pass.
    """
    if checkpoint.status == SyncStatus.SUCCESS.value:
        return 100.0
    phase = checkpoint.phase
    if phase not in PHASE_RANGES:
        return 0.0
    low, high = PHASE_RANGES[phase]
    fraction = phase_by_name(phase).weight(checkpoint.progress)
    return round(low + (high - low) * fraction, 1)


def build_view(checkpoint: Checkpoint) -> SyncStatusView:
    progress = checkpoint.progress
    counts = progress.get("counts") if isinstance(progress.get("counts"), dict) else {}
    errors = progress.get("errors") if isinstance(progress.get("errors"), list) else []
    return SyncStatusView(
        tenant_id=checkpoint.tenant_id,
        platform=checkpoint.platform,
        sync_status=checkpoint.status,
        phase=checkpoint.phase,
        percent=estimate_percent(checkpoint),
        counts=counts,
        message=progress.get("message"),
        batch_number=progress.get("batch_number"),
        errors_count=len(errors),
        heartbeat=checkpoint.heartbeat,
        last_sync_at=checkpoint.last_sync_at,
        last_full_sync_at=checkpoint.last_full_sync_at,
    )


def get_status(session: Session, tenant_id: str, platform: str) -> Optional[SyncStatusView]:
    """Status of the active connection for (tenant, platform), or None if there is none."""
    row = session.exec(
        select(SyncConnection)
        .where(SyncConnection.tenant_id == tenant_id)
        .where(SyncConnection.platform == platform)
        .where(SyncConnection.is_active == True)  # noqa: E712
        .order_by(SyncConnection.id.desc())
    ).first()
    if row is None:
        return None
    return build_view(Checkpoint.from_row(row))
