"""
Reset / teardown of a connection's synced data.

One transaction deletes every synced row for (tenant, platform), zeroes the
checkpoint, bumps the generation and marks the connection "syncing". Either
all of it lands or none of it does; a failure leaves the previous data and
checkpoint untouched.
"""
import json
import logging

from sqlalchemy import delete, select as sa_select
from sqlmodel import Session

from outreach.models.connection import SyncConnection, SyncStatus, utcnow
from outreach.models.engagement import EngagementEvent, Lead
from outreach.models.entity import Entity, SequenceStep, Variant, VariantFeatures
from outreach.models.metrics import DailyMetric, HistoricalStat
from outreach.sync.checkpoint import Checkpoint, ConnectionNotFoundError

logger = logging.getLogger(__name__)

# Children before parents (entity.id is referenced by most tables)
PURGE_ORDER = (
    VariantFeatures,
    EngagementEvent,
    DailyMetric,
    Variant,
    SequenceStep,
    HistoricalStat,
    Lead,
    Entity,
)


def fresh_progress(batch_number: int = 1) -> dict:
    """Checkpoint for the start of a new pass."""
    return {
        "phase": "listing",
        "batch_number": batch_number,
        "started_at": utcnow().isoformat(),
        "counts": {},
        "errors": [],
        "heartbeat": utcnow().isoformat(),
    }


def reset_connection(engine, connection_id: int) -> Checkpoint:
    """
    Purge synced data and restart the connection's checkpoint.

    Args:
        engine: SQLAlchemy engine.
        connection_id: SyncConnection primary key.

    Returns:
        The new checkpoint (generation incremented, status "syncing").

    Raises:
        ConnectionNotFoundError: no such connection.
    """
    with Session(engine) as s:
        row = s.get(SyncConnection, connection_id)
        if row is None:
            raise ConnectionNotFoundError(f"connection {connection_id} not found")
        tenant_id, platform = row.tenant_id, row.platform

        conn = s.connection()
        deleted = {}
        for model in PURGE_ORDER:
            if model is VariantFeatures:
                # Scope through the variant so orphaned features go too
                variant_ids = (
                    sa_select(Variant.id)
                    .where(Variant.tenant_id == tenant_id)
                    .where(Variant.platform == platform)
                )
                stmt = delete(VariantFeatures).where(
                    (VariantFeatures.variant_id.in_(variant_ids))
                    | ((VariantFeatures.tenant_id == tenant_id) & (VariantFeatures.platform == platform))
                )
            else:
                stmt = delete(model).where(model.tenant_id == tenant_id).where(model.platform == platform)
            deleted[model.__tablename__] = conn.execute(stmt).rowcount

        row.sync_progress = json.dumps(fresh_progress())
        row.generation = row.generation + 1
        row.sync_status = SyncStatus.SYNCING.value
        row.updated_at = utcnow()
        s.add(row)
        s.commit()
        s.refresh(row)

        logger.info(
            "Reset %s/%s (generation %d): deleted %s",
            tenant_id, platform, row.generation, deleted,
        )
        return Checkpoint.from_row(row)
