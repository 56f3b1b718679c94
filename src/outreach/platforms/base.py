"""
PlatformAdapter — the per-vendor surface the sync pipeline drives.

An adapter knows endpoints, envelopes and field names for one platform and
returns plain records. It never touches the database and never decides
when to stop: the phase pipeline owns persistence, cursors and the time
budget, so the same pipeline runs Smartlead, Reply.io and PhoneBurner.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from outreach.platforms.normalizer import Unrecognized, status_rank
from outreach.sync.http_client import ApiProfile, CredentialError, RateLimitedClient, UpstreamError

_EPOCH = datetime(1970, 1, 1)


# ─── Records ──────────────────────────────────────────────────────────────────

@dataclass
class EntityRecord:
    platform_id: str
    name: str = ""
    status: Optional[str] = None
    created_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_cache(self) -> Dict[str, Any]:
        """Compact form kept in the checkpoint's cached listing order."""
        return {
            "id": self.platform_id,
            "name": self.name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class EntityPage:
    records: List[EntityRecord]
    has_more: bool = False


@dataclass
class VariantRecord:
    platform_id: str
    label: str
    subject: Optional[str]
    body: str


@dataclass
class StepRecord:
    step_number: int
    delay_days: int = 0
    step_type: str = "email"
    variants: List[VariantRecord] = field(default_factory=list)


@dataclass
class LeadRecord:
    platform_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    linkedin_url: Optional[str] = None
    phone: Optional[str] = None
    industry: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None


@dataclass
class EventRecord:
    lead_platform_id: str
    mapping_id: str
    event_type: str
    occurred_at: datetime
    step_number: Optional[int] = None
    reply_text: Optional[str] = None
    duration_seconds: Optional[int] = None
    disposition: Optional[str] = None
    recording_url: Optional[str] = None


@dataclass
class EventPage:
    leads: List[LeadRecord] = field(default_factory=list)
    events: List[EventRecord] = field(default_factory=list)
    has_more: bool = False
    # Per-lead failures inside the page; the page itself still counts as done
    errors: List[str] = field(default_factory=list)


@dataclass
class HistoricalRow:
    period_start: date
    period_end: date
    counts: Dict[str, int] = field(default_factory=dict)


StepsResult = Union[List[StepRecord], Unrecognized]


# ─── Adapter ──────────────────────────────────────────────────────────────────

class PlatformAdapter(ABC):
    """Base class for platform adapters. Subclasses set the class attributes."""

    platform: str = ""
    entity_kind: str = ""
    profile: ApiProfile
    time_budget_seconds: float = 55.0
    historical_id_batch: int = 10
    supports_historical: bool = False
    historical_per_entity: bool = True
    has_subentities: bool = False

    def __init__(self, client: RateLimitedClient, credential: str):
        """
        Args:
            client: Rate-limited client built on this adapter's profile.
            credential: Decrypted API key or token. Never logged.
        """
        self.client = client
        self.credential = credential

    async def _get(self, endpoint: str, **kwargs: Any) -> Any:
        return await self.client.request(endpoint, self.credential, **kwargs)

    # ─── Listing and ordering ─────────────────────────────────────────────────

    @abstractmethod
    async def list_entities(self, page: int) -> EntityPage:
        """Fetch one page (0-based) of top-level entities."""

    def sort_key(self, item: Dict[str, Any]):
        """
        Priority order for a cached listing item: status rank, newest first,
        then platform id so ties are deterministic across runs.
        """
        created = item.get("created_at")
        if isinstance(created, str):
            try:
                created = datetime.fromisoformat(created)
            except ValueError:
                created = None
        age_key = -(created - _EPOCH).total_seconds() if created else float("inf")
        return (status_rank(item.get("status")), age_key, str(item.get("id", "")))

    def order_entities(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(items, key=self.sort_key)

    def wants_detail(self, item: Dict[str, Any]) -> bool:
        """Whether the sub-entity phase should fetch steps/variants for this entity."""
        return self.has_subentities

    # ─── Per-entity data ──────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_analytics(self, platform_id: str) -> Optional[Dict[str, int]]:
        """Today's aggregate counts for one entity, or None when unavailable."""

    def entity_lead(self, raw: Dict[str, Any]) -> Optional[LeadRecord]:
        """Lead row derived from the entity itself (contact-style platforms)."""
        return None

    async def fetch_steps(self, platform_id: str) -> StepsResult:
        return []

    @abstractmethod
    async def fetch_event_page(self, platform_id: str, page: int) -> EventPage:
        """Fetch one page (0-based) of leads and engagement events for one entity."""

    async def fetch_historical(
        self, start: date, end: date, entity_ids: List[str]
    ) -> List[HistoricalRow]:
        return []

    # ─── Helpers ──────────────────────────────────────────────────────────────

    async def _isolated(self, errors: List[str], label: str, coro) -> Any:
        """
        Await coro, turning a per-item upstream failure into an error entry.

        CredentialError still propagates: a rejected key is connection-level.
        """
        try:
            return await coro
        except CredentialError:
            raise
        except UpstreamError as exc:
            errors.append(f"{label}: {exc}")
            return None
