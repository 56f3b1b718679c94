"""Tests for DB models and the natural-key upsert helpers."""
from datetime import date, datetime

import pytest
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from outreach.db.upsert import insert_if_absent, upsert
from outreach.models.connection import SyncConnection, SyncStatus
from outreach.models.engagement import EngagementEvent
from outreach.models.entity import Entity
from outreach.models.metrics import DailyMetric


def _entity(session: Session, platform_id: str = "11") -> Entity:
    row = Entity(tenant_id="t1", platform="smartlead", platform_id=platform_id, kind="campaign", name="Q1")
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


class TestSyncConnection:
    def test_defaults(self):
        conn = SyncConnection(tenant_id="t1", platform="smartlead", credential_encrypted="x")
        assert conn.is_active is True
        assert conn.sync_status == SyncStatus.IDLE.value
        assert conn.sync_progress == "{}"
        assert conn.generation == 0
        assert conn.last_full_sync_at is None

    def test_status_values_compare_as_strings(self):
        assert SyncStatus.PARTIAL == "partial"


class TestEntity:
    def test_natural_key_is_unique(self, test_session: Session):
        _entity(test_session)
        test_session.add(Entity(tenant_id="t1", platform="smartlead", platform_id="11", kind="campaign"))
        with pytest.raises(IntegrityError):
            test_session.commit()

    def test_same_id_on_other_tenant_is_allowed(self, test_session: Session):
        _entity(test_session)
        test_session.add(Entity(tenant_id="t2", platform="smartlead", platform_id="11", kind="campaign"))
        test_session.commit()
        assert len(test_session.exec(select(Entity)).all()) == 2


class TestUpsert:
    def test_second_upsert_updates_in_place(self, test_session: Session):
        entity = _entity(test_session)
        key = {"tenant_id": "t1", "platform": "smartlead", "entity_id": entity.id, "metric_date": date(2026, 1, 2)}
        first = upsert(test_session, DailyMetric, key, {"sent_count": 5})
        test_session.commit()
        second = upsert(test_session, DailyMetric, key, {"sent_count": 9, "replied_count": 1})
        test_session.commit()

        assert first.id == second.id
        rows = test_session.exec(select(DailyMetric)).all()
        assert len(rows) == 1
        assert (rows[0].sent_count, rows[0].replied_count) == (9, 1)

    def test_insert_if_absent_keeps_first_row(self, test_session: Session):
        key = {"tenant_id": "t1", "platform": "smartlead", "idempotency_key": "900:1:2026-01-02T10:00:00"}
        values = {"event_type": "sent", "occurred_at": datetime(2026, 1, 2, 10)}
        row, created = insert_if_absent(test_session, EngagementEvent, key, values)
        test_session.commit()
        again, created_again = insert_if_absent(
            test_session, EngagementEvent, key, {**values, "event_type": "opened"}
        )

        assert created is True
        assert created_again is False
        assert again.id == row.id
        assert again.event_type == "sent"
