"""Shared test fixtures."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Generator, List, Optional, Set, Tuple

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from outreach.models.connection import SyncConnection  # noqa: F401
from outreach.models.engagement import EngagementEvent, Lead  # noqa: F401
from outreach.models.entity import Entity, SequenceStep, Variant, VariantFeatures  # noqa: F401
from outreach.models.metrics import DailyMetric, HistoricalStat  # noqa: F401

from outreach.config import Settings
from outreach.platforms.base import (
    EntityPage,
    EntityRecord,
    EventPage,
    HistoricalRow,
    PlatformAdapter,
    StepsResult,
)
from outreach.platforms.smartlead import SMARTLEAD_PROFILE
from outreach.sync.checkpoint import CheckpointStore
from outreach.sync.http_client import UpstreamError
from outreach.sync.runner import SyncRunner


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        credential_key="",
        max_batches=50,
        chain_after={"smartlead": "replyio"},
        historical_lookback_days=270,
        historical_chunk_days=90,
    )


@pytest.fixture(name="seeded_connection")
def seeded_connection_fixture(test_session: Session) -> SyncConnection:
    """An active Smartlead connection for tenant t1, never synced."""
    conn = SyncConnection(
        tenant_id="t1",
        platform="smartlead",
        credential_encrypted="sl-key-123",
    )
    test_session.add(conn)
    test_session.commit()
    test_session.refresh(conn)
    return conn


# ─── Fake platform ────────────────────────────────────────────────────────────

class FakeClock:
    """Manually advanced monotonic clock for TimeBudget."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakePlatform:
    """
    Scriptable upstream. Each analytics fetch advances the clock by
    seconds_per_entity, which makes "N entities per batch" exact; each
    event page advances it by seconds_per_event_page.
    """

    entities: List[EntityRecord] = field(default_factory=list)
    page_size: int = 100
    seconds_per_entity: float = 1.0
    seconds_per_event_page: float = 0.0
    fail_ids: Set[str] = field(default_factory=set)
    detail_ids: Set[str] = field(default_factory=set)
    steps: Dict[str, Any] = field(default_factory=dict)
    event_pages: Dict[Tuple[str, int], EventPage] = field(default_factory=dict)
    historical: Callable[..., List[HistoricalRow]] = None
    supports_historical: bool = False
    clock: FakeClock = field(default_factory=FakeClock)
    store: Optional[CheckpointStore] = None
    on_analytics: Optional[Callable[[str], None]] = None
    list_error: Optional[Exception] = None

    analytics_calls: List[str] = field(default_factory=list)
    event_page_calls: List[Tuple[str, int]] = field(default_factory=list)
    observed_statuses: List[str] = field(default_factory=list)
    list_calls: int = 0

    def add_entities(self, count: int, status: str = "active", start: int = 0) -> None:
        base = datetime(2025, 1, 1)
        for i in range(start, start + count):
            self.entities.append(
                EntityRecord(
                    platform_id=f"c{i:04d}",
                    name=f"Campaign {i}",
                    status=status,
                    created_at=base + timedelta(hours=i),
                    raw={"id": f"c{i:04d}"},
                )
            )


class FakeAdapter(PlatformAdapter):
    platform = "smartlead"
    entity_kind = "campaign"
    profile = SMARTLEAD_PROFILE
    time_budget_seconds = 1000.0
    has_subentities = True

    def __init__(self, client, credential, world: FakePlatform):
        super().__init__(client, credential)
        self.world = world
        self.supports_historical = world.supports_historical

    async def list_entities(self, page: int) -> EntityPage:
        self.world.list_calls += 1
        if self.world.list_error is not None:
            raise self.world.list_error
        size = self.world.page_size
        records = self.world.entities[page * size:(page + 1) * size]
        return EntityPage(records=records, has_more=(page + 1) * size < len(self.world.entities))

    async def fetch_analytics(self, platform_id: str) -> Optional[Dict[str, int]]:
        self.world.analytics_calls.append(platform_id)
        if self.world.store is not None:
            conn = self.world.store.find_active("t1", "smartlead")
            self.world.observed_statuses.append(conn.status)
        if self.world.on_analytics:
            self.world.on_analytics(platform_id)
        self.world.clock.advance(self.world.seconds_per_entity)
        if platform_id in self.world.fail_ids:
            raise UpstreamError(500, "internal error", f"/campaigns/{platform_id}/analytics")
        return {"sent_count": 10, "opened_count": 4, "replied_count": 1}

    def wants_detail(self, item: Dict[str, Any]) -> bool:
        return item["id"] in self.world.detail_ids

    async def fetch_steps(self, platform_id: str) -> StepsResult:
        return self.world.steps.get(platform_id, [])

    async def fetch_event_page(self, platform_id: str, page: int) -> EventPage:
        self.world.event_page_calls.append((platform_id, page))
        self.world.clock.advance(self.world.seconds_per_event_page)
        return self.world.event_pages.get((platform_id, page), EventPage())

    async def fetch_historical(self, start, end, entity_ids):
        if self.world.historical is None:
            return []
        return self.world.historical(start, end, entity_ids)


class RecordingScheduler:
    """Stands in for ContinuationScheduler; records what would be dispatched."""

    def __init__(self, store: Optional[CheckpointStore] = None):
        self.calls: List[Tuple[str, str, Any]] = []
        self.status_at_schedule: List[str] = []
        self.store = store

    def schedule(self, tenant_id: str, platform: str, params) -> bool:
        self.calls.append((tenant_id, platform, params))
        if self.store is not None:
            conn = self.store.find_active(tenant_id, platform)
            self.status_at_schedule.append(conn.status if conn else None)
        return True


@pytest.fixture(name="world")
def world_fixture(engine) -> FakePlatform:
    return FakePlatform(store=CheckpointStore(engine))


@pytest.fixture(name="recorder")
def recorder_fixture(engine) -> RecordingScheduler:
    return RecordingScheduler(CheckpointStore(engine))


@pytest.fixture(name="make_runner")
def make_runner_fixture(engine, settings, world, recorder):
    """Build a SyncRunner wired to the fake platform, fake clock and recorder."""

    def _make(time_budget: float = 1000.0, continuations: Any = "recorder") -> SyncRunner:
        return SyncRunner(
            engine,
            recorder if continuations == "recorder" else continuations,
            settings,
            adapter_factory=lambda platform, client, credential: FakeAdapter(client, credential, world),
            clock=world.clock,
            time_budget=time_budget,
        )

    return _make
