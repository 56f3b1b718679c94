"""
Stuck-sync recovery sweep.

A chain can stall: the process running a batch dies mid-unit (left in
"syncing"), or a continuation is dropped (left in "partial"). Neither
state heals itself, so a periodic sweep looks for active connections
whose heartbeat has gone quiet and either re-schedules the next batch or,
past the give-up threshold, marks them "error".
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlmodel import Session, select

from outreach.config import Settings, get_settings
from outreach.models.connection import SyncConnection, SyncStatus, utcnow
from outreach.sync.checkpoint import Checkpoint, CheckpointStore, StaleCheckpointError
from outreach.sync.continuation import ContinuationParams, ContinuationScheduler

logger = logging.getLogger(__name__)


@dataclass
class StuckConnection:
    connection_id: int
    tenant_id: str
    platform: str
    sync_status: str
    last_activity: datetime
    stale_minutes: float
    batch_number: int
    generation: int


def _last_activity(checkpoint: Checkpoint, updated_at: datetime) -> datetime:
    return checkpoint.heartbeat or updated_at


def detect_stuck(
    session: Session, now: Optional[datetime] = None, settings: Optional[Settings] = None
) -> List[StuckConnection]:
    """
    Find active connections in "syncing" or "partial" whose last heartbeat is
    older than the per-status threshold.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    thresholds = {
        SyncStatus.SYNCING.value: timedelta(minutes=settings.stuck_syncing_minutes),
        SyncStatus.PARTIAL.value: timedelta(minutes=settings.stuck_partial_minutes),
    }
    rows = session.exec(
        select(SyncConnection)
        .where(SyncConnection.is_active == True)  # noqa: E712
        .where(SyncConnection.sync_status.in_(list(thresholds)))
        .order_by(SyncConnection.id)
    ).all()

    stuck = []
    for row in rows:
        checkpoint = Checkpoint.from_row(row)
        last = _last_activity(checkpoint, row.updated_at)
        if now - last <= thresholds[row.sync_status]:
            continue
        stuck.append(
            StuckConnection(
                connection_id=row.id,
                tenant_id=row.tenant_id,
                platform=row.platform,
                sync_status=row.sync_status,
                last_activity=last,
                stale_minutes=round((now - last).total_seconds() / 60, 1),
                batch_number=int(checkpoint.progress.get("batch_number") or 1),
                generation=row.generation,
            )
        )
    return stuck


def recover(
    engine,
    continuations: Optional[ContinuationScheduler],
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, int]:
    """
    Resume or give up on every stuck connection.

    Returns:
        {"found": n, "resumed": n, "failed": n}
    """
    settings = settings or get_settings()
    now = now or utcnow()
    store = CheckpointStore(engine)
    with Session(engine) as s:
        stuck = detect_stuck(s, now=now, settings=settings)

    result = {"found": len(stuck), "resumed": 0, "failed": 0}
    give_up = settings.stuck_give_up_minutes
    for item in stuck:
        try:
            if item.stale_minutes > give_up:
                store.save(
                    item.connection_id,
                    {"message": f"Sync abandoned: no progress for {item.stale_minutes:.0f} minutes"},
                    generation=item.generation,
                    status=SyncStatus.ERROR.value,
                )
                logger.warning(
                    "Gave up on %s/%s after %.0f minutes", item.tenant_id, item.platform, item.stale_minutes
                )
                result["failed"] += 1
                continue
        except StaleCheckpointError:
            # Reset or a live batch got there first
            continue

        if continuations is None:
            continue
        logger.info(
            "Resuming stuck %s/%s (%s, %.0f min idle) at batch %d",
            item.tenant_id, item.platform, item.sync_status, item.stale_minutes, item.batch_number + 1,
        )
        if continuations.schedule(
            item.tenant_id,
            item.platform,
            ContinuationParams(continuation=True, batch_number=item.batch_number + 1),
        ):
            result["resumed"] += 1
    return result
