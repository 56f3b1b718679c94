"""Platform connection management routes."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session, select

from outreach.db.engine import get_session
from outreach.models.connection import SyncConnection, utcnow
from outreach.platforms.registry import supported_platforms
from outreach.security import encrypt_credential

router = APIRouter()


class ConnectionCreate(BaseModel):
    tenant_id: str
    platform: str
    credential: str


class ConnectionResponse(BaseModel):
    id: int
    tenant_id: str
    platform: str
    is_active: bool
    sync_status: str
    last_sync_at: Optional[datetime]
    last_full_sync_at: Optional[datetime]
    created_at: datetime


def _response(row: SyncConnection) -> ConnectionResponse:
    # Never echo the credential back
    return ConnectionResponse(
        id=row.id,
        tenant_id=row.tenant_id,
        platform=row.platform,
        is_active=row.is_active,
        sync_status=row.sync_status,
        last_sync_at=row.last_sync_at,
        last_full_sync_at=row.last_full_sync_at,
        created_at=row.created_at,
    )


def _active_rows(session: Session, tenant_id: str, platform: str) -> List[SyncConnection]:
    return session.exec(
        select(SyncConnection)
        .where(SyncConnection.tenant_id == tenant_id)
        .where(SyncConnection.platform == platform)
        .where(SyncConnection.is_active == True)  # noqa: E712
    ).all()


def upsert_connection(session: Session, tenant_id: str, platform: str, credential: str) -> SyncConnection:
    """
    Create the active connection for (tenant, platform), deactivating any
    previous one so at most one row is active.
    """
    for old in _active_rows(session, tenant_id, platform):
        old.is_active = False
        old.updated_at = utcnow()
        session.add(old)

    row = SyncConnection(
        tenant_id=tenant_id,
        platform=platform,
        credential_encrypted=encrypt_credential(credential),
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


@router.post("", response_model=ConnectionResponse, status_code=201)
def create_connection(request: ConnectionCreate, session: Session = Depends(get_session)):
    if request.platform not in supported_platforms():
        raise HTTPException(status_code=400, detail=f"Unsupported platform: {request.platform}")
    if not request.credential.strip():
        raise HTTPException(status_code=400, detail="credential must not be empty")
    return _response(upsert_connection(session, request.tenant_id, request.platform, request.credential.strip()))


@router.get("/{tenant_id}", response_model=List[ConnectionResponse])
def list_connections(tenant_id: str, session: Session = Depends(get_session)):
    rows = session.exec(
        select(SyncConnection)
        .where(SyncConnection.tenant_id == tenant_id)
        .order_by(SyncConnection.platform, SyncConnection.id.desc())
    ).all()
    return [_response(r) for r in rows]


@router.delete("/{tenant_id}/{platform}")
def deactivate_connection(tenant_id: str, platform: str, session: Session = Depends(get_session)):
    rows = _active_rows(session, tenant_id, platform)
    if not rows:
        raise HTTPException(status_code=404, detail=f"No active {platform} connection for {tenant_id}")
    for row in rows:
        row.is_active = False
        row.updated_at = utcnow()
        session.add(row)
    session.commit()
    return {"success": True, "deactivated": len(rows)}
