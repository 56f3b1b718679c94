"""Tests for database migration helpers."""
import pytest
from sqlalchemy import text
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from outreach.db.migrations import run_migrations
from outreach.models.connection import SyncConnection


def _columns(engine, table):
    with engine.connect() as conn:
        return {row[1] for row in conn.execute(text(f"PRAGMA table_info({table})"))}


@pytest.fixture(name="migration_engine")
def migration_engine_fixture():
    """In-memory SQLite engine with full schema, for testing migrations."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="legacy_engine")
def legacy_engine_fixture():
    """Schema as it was before generation / call-activity columns existed."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    with engine.connect() as conn:
        conn.execute(text(
            "CREATE TABLE syncconnection ("
            "id INTEGER PRIMARY KEY, tenant_id VARCHAR NOT NULL, platform VARCHAR NOT NULL, "
            "credential_encrypted VARCHAR NOT NULL, is_active BOOLEAN NOT NULL, "
            "sync_status VARCHAR NOT NULL, sync_progress VARCHAR NOT NULL, "
            "last_sync_at DATETIME, created_at DATETIME NOT NULL, updated_at DATETIME NOT NULL)"
        ))
        conn.execute(text(
            "CREATE TABLE engagementevent ("
            "id INTEGER PRIMARY KEY, tenant_id VARCHAR NOT NULL, platform VARCHAR NOT NULL, "
            "idempotency_key VARCHAR NOT NULL, event_type VARCHAR NOT NULL)"
        ))
        conn.execute(text(
            "INSERT INTO syncconnection VALUES "
            "(1, 't1', 'smartlead', 'key', 1, 'success', '{}', NULL, '2026-01-01', '2026-01-01')"
        ))
        conn.commit()
    yield engine
    engine.dispose()


class TestRunMigrations:
    def test_run_migrations_does_not_raise(self, migration_engine):
        """Migration should complete without errors on a fresh DB."""
        run_migrations(migration_engine)

    def test_run_migrations_is_idempotent(self, migration_engine):
        """Running migrations twice must not raise (columns already exist)."""
        run_migrations(migration_engine)
        run_migrations(migration_engine)

    def test_adds_missing_connection_columns(self, legacy_engine):
        run_migrations(legacy_engine)
        columns = _columns(legacy_engine, "syncconnection")
        assert {"generation", "last_full_sync_at"} <= columns

    def test_adds_call_activity_columns(self, legacy_engine):
        run_migrations(legacy_engine)
        columns = _columns(legacy_engine, "engagementevent")
        assert {"duration_seconds", "disposition", "recording_url"} <= columns

    def test_existing_rows_get_generation_zero(self, legacy_engine):
        run_migrations(legacy_engine)
        with legacy_engine.connect() as conn:
            generation = conn.execute(text("SELECT generation FROM syncconnection WHERE id = 1")).scalar()
        assert generation == 0

    def test_generation_queryable_through_model(self, migration_engine):
        run_migrations(migration_engine)
        with Session(migration_engine) as s:
            row = SyncConnection(tenant_id="t1", platform="replyio", credential_encrypted="k", generation=3)
            s.add(row)
            s.commit()
            s.refresh(row)
            assert s.get(SyncConnection, row.id).generation == 3

    def test_non_sqlite_is_skipped(self):
        class FakeDialect:
            name = "postgresql"

        class FakeEngine:
            dialect = FakeDialect()

            def connect(self):
                raise AssertionError("must not connect")

        run_migrations(FakeEngine())
