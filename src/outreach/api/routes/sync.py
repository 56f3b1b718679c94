"""Sync trigger, status, stop and stuck-sync routes."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from outreach.config import get_settings
from outreach.db.engine import get_engine, get_session
from outreach.platforms.registry import UnknownPlatformError
from outreach.sync.continuation import build_scheduler_from_settings
from outreach.sync.recovery import detect_stuck
from outreach.sync.runner import NoActiveConnectionError, RunOptions, SyncRunner
from outreach.sync.status import SyncStatusView, get_status

router = APIRouter()

_runner: Optional[SyncRunner] = None


def get_runner() -> SyncRunner:
    """Process-wide runner; its continuation transport follows CONTINUATION_MODE."""
    global _runner
    if _runner is None:
        settings = get_settings()
        _runner = SyncRunner(get_engine(), build_scheduler_from_settings(settings), settings)
    return _runner


class SyncTriggerRequest(BaseModel):
    reset: bool = False
    force_advance: bool = False
    continuation: bool = False
    batch_number: int = 1


class SyncTriggerResponse(BaseModel):
    success: bool
    complete: bool
    status: str
    progress: Dict[str, Any]
    message: str
    batch_number: int
    skipped: bool = False


class StuckConnectionResponse(BaseModel):
    connection_id: int
    tenant_id: str
    platform: str
    sync_status: str
    last_activity: datetime
    stale_minutes: float
    batch_number: int


@router.get("/stuck", response_model=List[StuckConnectionResponse])
def stuck_syncs(session: Session = Depends(get_session)):
    """Active connections whose sync heartbeat has gone quiet."""
    return [
        StuckConnectionResponse(
            connection_id=item.connection_id,
            tenant_id=item.tenant_id,
            platform=item.platform,
            sync_status=item.sync_status,
            last_activity=item.last_activity,
            stale_minutes=item.stale_minutes,
            batch_number=item.batch_number,
        )
        for item in detect_stuck(session)
    ]


@router.post("/{tenant_id}/{platform}", response_model=SyncTriggerResponse)
async def trigger_sync(
    tenant_id: str,
    platform: str,
    request: SyncTriggerRequest,
    runner: SyncRunner = Depends(get_runner),
    authorization: Optional[str] = Header(default=None),
):
    """
    Run one time-boxed batch and return its outcome.

    The UI calls this with reset/force_advance; the continuation transport
    calls it with continuation=true and the next batch_number.
    """
    token = get_settings().continuation_token
    if request.continuation and token and authorization != f"Bearer {token}":
        raise HTTPException(status_code=401, detail="Invalid continuation token")

    try:
        result = await runner.run(
            tenant_id,
            platform,
            RunOptions(
                reset=request.reset,
                force_advance=request.force_advance,
                continuation=request.continuation,
                batch_number=request.batch_number,
            ),
        )
    except UnknownPlatformError:
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {platform}")
    except NoActiveConnectionError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    return SyncTriggerResponse(
        success=result.success,
        complete=result.complete,
        status=result.status,
        progress=result.progress,
        message=result.message,
        batch_number=result.batch_number,
        skipped=result.skipped,
    )


@router.get("/{tenant_id}/{platform}/status", response_model=SyncStatusView)
def sync_status(tenant_id: str, platform: str, session: Session = Depends(get_session)):
    """Current status, phase and percent estimate for the active connection."""
    view = get_status(session, tenant_id, platform)
    if view is None:
        raise HTTPException(status_code=404, detail=f"No active {platform} connection for {tenant_id}")
    return view


@router.post("/{tenant_id}/{platform}/stop")
def stop_sync(tenant_id: str, platform: str, runner: SyncRunner = Depends(get_runner)):
    """Request cancellation; the running batch exits at its next unit boundary."""
    checkpoint = runner.store.find_active(tenant_id, platform)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail=f"No active {platform} connection for {tenant_id}")
    written = runner.store.request_stop(checkpoint.connection_id)
    return {"success": True, "status": written.status, "message": "Sync stopped by user"}
