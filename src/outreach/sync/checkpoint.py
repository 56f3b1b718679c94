"""
Checkpoint store: persisted, per-connection resumable sync progress.

sync_progress is a JSON object whose top-level keys are owned by different
parts of the pipeline:

    {
      "phase": "entities",
      "listing":     {"page": 3, "order": [...], "done": true},
      "historical":  {"chunk_index": 4, "total_chunks": 9, "done": false},
      "entities":    {"index": 120, "total": 230},
      "subentities": {"index": 0},
      "events":      {"entity_index": 5, "page": 2},
      "counts":      {"entities": 120, "events": 3400, ...},
      "errors":      ["..."],
      "batch_number": 2,
      "heartbeat":   "2026-01-07T10:00:00"
    }

Writes are merge-patches (RFC 7386 style: nested dicts merge, None deletes)
so a phase only touches its own key. Every write carries the connection's
generation; reset bumps the generation, so a stale continuation that was
already in flight fails its next write with StaleCheckpointError instead of
clobbering the fresh checkpoint.
"""
import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from outreach.models.connection import SyncConnection, SyncStatus, utcnow

logger = logging.getLogger(__name__)

MAX_STORED_ERRORS = 50


class StaleCheckpointError(RuntimeError):
    """Raised when a write carries a generation older than the stored one."""


class ConnectionNotFoundError(LookupError):
    """Raised when the connection row does not exist."""


def merge_patch(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """Return base merged with patch. Nested dicts merge; None removes a key."""
    result = copy.deepcopy(base)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_patch(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


@dataclass
class Checkpoint:
    """Snapshot of a connection's sync state as loaded from the store."""

    connection_id: int
    tenant_id: str
    platform: str
    status: str
    generation: int
    is_active: bool
    credential_encrypted: str
    progress: Dict[str, Any] = field(default_factory=dict)
    last_sync_at: Optional[datetime] = None
    last_full_sync_at: Optional[datetime] = None

    @property
    def phase(self) -> Optional[str]:
        return self.progress.get("phase")

    def section(self, name: str) -> Dict[str, Any]:
        value = self.progress.get(name)
        return value if isinstance(value, dict) else {}

    @property
    def heartbeat(self) -> Optional[datetime]:
        raw = self.progress.get("heartbeat")
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    @classmethod
    def from_row(cls, row: SyncConnection) -> "Checkpoint":
        try:
            progress = json.loads(row.sync_progress or "{}")
        except ValueError:
            logger.warning("Connection %s has unreadable sync_progress; treating as empty", row.id)
            progress = {}
        return cls(
            connection_id=row.id,
            tenant_id=row.tenant_id,
            platform=row.platform,
            status=row.sync_status,
            generation=row.generation,
            is_active=row.is_active,
            credential_encrypted=row.credential_encrypted,
            progress=progress if isinstance(progress, dict) else {},
            last_sync_at=row.last_sync_at,
            last_full_sync_at=row.last_full_sync_at,
        )


class CheckpointStore:
    """Load and merge-patch SyncConnection checkpoints."""

    def __init__(self, engine):
        self.engine = engine

    def load(self, connection_id: int) -> Checkpoint:
        with Session(self.engine) as s:
            row = s.get(SyncConnection, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"connection {connection_id} not found")
            return Checkpoint.from_row(row)

    def find_active(self, tenant_id: str, platform: str) -> Optional[Checkpoint]:
        """Return the active connection's checkpoint for (tenant, platform), if any."""
        with Session(self.engine) as s:
            row = s.exec(
                select(SyncConnection)
                .where(SyncConnection.tenant_id == tenant_id)
                .where(SyncConnection.platform == platform)
                .where(SyncConnection.is_active == True)  # noqa: E712
                .order_by(SyncConnection.id.desc())
            ).first()
            return Checkpoint.from_row(row) if row else None

    def save(
        self,
        connection_id: int,
        patch: Optional[Dict[str, Any]] = None,
        *,
        generation: Optional[int] = None,
        status: Optional[str] = None,
        replace: bool = False,
        preserve_stopped: bool = True,
        **columns: Any,
    ) -> Checkpoint:
        """
        Merge patch into the stored checkpoint and optionally change status.

        Args:
            connection_id: SyncConnection primary key.
            patch: Merge-patch for sync_progress (or full value when replace=True).
            generation: Expected generation; a mismatch raises StaleCheckpointError.
                        None skips the check (external writes such as stop).
            status: New sync_status, or None to leave it unchanged.
            replace: Overwrite sync_progress instead of merging.
            preserve_stopped: Never move a connection out of "stopped"; a
                        user-initiated stop wins over the runner's own writes.
            **columns: Extra SyncConnection columns (last_sync_at, ...).

        Returns:
            The checkpoint as written.
        """
        with Session(self.engine) as s:
            row = s.get(SyncConnection, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"connection {connection_id} not found")
            if generation is not None and row.generation != generation:
                raise StaleCheckpointError(
                    f"connection {connection_id} generation is {row.generation}, "
                    f"write carried {generation}"
                )

            current = Checkpoint.from_row(row).progress
            progress = dict(patch or {}) if replace else merge_patch(current, patch or {})
            progress["heartbeat"] = utcnow().isoformat()
            errors = progress.get("errors")
            if isinstance(errors, list) and len(errors) > MAX_STORED_ERRORS:
                progress["errors"] = errors[-MAX_STORED_ERRORS:]

            if (
                status is not None
                and preserve_stopped
                and row.sync_status == SyncStatus.STOPPED.value
                and status != SyncStatus.STOPPED.value
            ):
                status = None

            values: Dict[str, Any] = {
                "sync_progress": json.dumps(progress),
                "updated_at": utcnow(),
                **columns,
            }
            if status is not None:
                values["sync_status"] = status

            stmt = update(SyncConnection).where(SyncConnection.id == connection_id)
            if generation is not None:
                stmt = stmt.where(SyncConnection.generation == generation)
            result = s.connection().execute(stmt.values(**values))
            if result.rowcount == 0:
                s.rollback()
                raise StaleCheckpointError(f"connection {connection_id} changed during write")
            s.commit()

            row = s.get(SyncConnection, connection_id)
            s.refresh(row)
            return Checkpoint.from_row(row)

    def status_of(self, connection_id: int) -> str:
        """Fresh read of sync_status (used for cooperative cancellation)."""
        with Session(self.engine) as s:
            row = s.get(SyncConnection, connection_id)
            if row is None:
                raise ConnectionNotFoundError(f"connection {connection_id} not found")
            return row.sync_status

    def request_stop(self, connection_id: int) -> Checkpoint:
        """User-initiated cancellation. Observed by the runner at its next boundary."""
        logger.info("Stop requested for connection %s", connection_id)
        return self.save(
            connection_id,
            {"message": "Sync stopped by user"},
            status=SyncStatus.STOPPED.value,
            preserve_stopped=False,
        )
