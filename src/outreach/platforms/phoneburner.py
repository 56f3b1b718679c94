"""
PhoneBurner adapter.

Contacts are the entities and call activities are the engagement events.
PhoneBurner has no per-contact analytics; tenant-wide dialing stats come
from /dialsession/usage and feed the historical phase.
"""
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from outreach.platforms.base import (
    EntityPage,
    EntityRecord,
    EventPage,
    EventRecord,
    HistoricalRow,
    LeadRecord,
    PlatformAdapter,
)
from outreach.platforms.normalizer import (
    Recognized,
    as_int,
    parse_timestamp,
    unwrap_items,
)
from outreach.sync.http_client import ApiProfile

logger = logging.getLogger(__name__)

PHONEBURNER_PROFILE = ApiProfile(
    base_url="https://www.phoneburner.com/rest/1",
    request_delay=0.5,
    rate_limit_backoff=2.0,
    max_retries=3,
    auth_style="bearer",
)

CONTACTS_PAGE_SIZE = 100
ACTIVITIES_PAGE_SIZE = 100
ACTIVITY_LOOKBACK_DAYS = 180

# PhoneBurner activity type ids: 41 = Called a Prospect, 42 = Received Call
CALL_ACTIVITY_IDS = ("41", "42")

_ACTIVITY_KEYS = ("contact_activities", "contact_activity", "activities")


def is_call_activity(activity: Dict[str, Any]) -> bool:
    return (
        "call" in (activity.get("activity") or "").lower()
        or str(activity.get("activity_id")) in CALL_ACTIVITY_IDS
        or any(k in activity for k in ("duration", "disposition", "recording_url"))
    )


class PhoneBurnerAdapter(PlatformAdapter):
    platform = "phoneburner"
    entity_kind = "contact"
    profile = PHONEBURNER_PROFILE
    time_budget_seconds = 45.0
    supports_historical = True
    # Usage stats are tenant-wide; chunks are not split by contact id
    historical_per_entity = False

    async def list_entities(self, page: int) -> EntityPage:
        # PhoneBurner pages are 1-based
        raw = await self._get(
            "/contacts",
            params={"page": page + 1, "page_size": CONTACTS_PAGE_SIZE},
        )
        shape = unwrap_items(raw, ("contacts",))
        if not isinstance(shape, Recognized):
            logger.warning("Unexpected /contacts shape, keys=%s", shape.keys)
            return EntityPage(records=[])
        total_pages = as_int(shape.meta.get("total_pages")) or 1
        records = []
        for contact in shape.items:
            contact_id = contact.get("contact_user_id")
            if contact_id is None:
                continue
            name = f"{contact.get('first_name') or ''} {contact.get('last_name') or ''}".strip()
            records.append(
                EntityRecord(
                    platform_id=str(contact_id),
                    name=name,
                    status=None,
                    created_at=parse_timestamp(contact.get("date_added")),
                    raw=contact,
                )
            )
        return EntityPage(records=records, has_more=page + 1 < total_pages)

    async def fetch_analytics(self, platform_id: str) -> Optional[Dict[str, int]]:
        return None

    async def fetch_event_page(self, platform_id: str, page: int) -> EventPage:
        raw = await self._get(
            f"/contacts/{platform_id}/activities",
            params={
                "days": ACTIVITY_LOOKBACK_DAYS,
                "page": page + 1,
                "page_size": ACTIVITIES_PAGE_SIZE,
            },
        )
        shape = unwrap_items(raw, _ACTIVITY_KEYS)
        if not isinstance(shape, Recognized):
            logger.warning("Could not extract activities for contact %s, keys=%s", platform_id, shape.keys)
            return EventPage(has_more=False, errors=[f"contact {platform_id}: unrecognized activities page"])

        total_pages = as_int(shape.meta.get("total_pages")) or 1
        result = EventPage(has_more=page + 1 < total_pages)
        for activity in shape.items:
            if not is_call_activity(activity):
                continue
            occurred_at = parse_timestamp(activity.get("date"))
            activity_key = activity.get("user_activity_id")
            if occurred_at is None or activity_key is None:
                continue
            result.events.append(
                EventRecord(
                    lead_platform_id=platform_id,
                    mapping_id=f"{platform_id}_{activity_key}",
                    event_type="call",
                    occurred_at=occurred_at,
                    duration_seconds=as_int(activity.get("duration")),
                    disposition=activity.get("disposition") or activity.get("activity"),
                    recording_url=activity.get("recording_url"),
                )
            )
        return result

    def entity_lead(self, contact: Dict[str, Any]) -> Optional[LeadRecord]:
        """Lead row for a contact, so call events join to a person."""
        email = (contact.get("email") or "").strip().lower() or None
        return LeadRecord(
            platform_id=str(contact.get("contact_user_id")),
            email=email,
            first_name=contact.get("first_name"),
            last_name=contact.get("last_name"),
            company=contact.get("company"),
            phone=contact.get("phone"),
        )

    async def fetch_historical(
        self, start: date, end: date, entity_ids: List[str]
    ) -> List[HistoricalRow]:
        raw = await self._get(
            "/dialsession/usage",
            params={"date_start": start.isoformat(), "date_end": end.isoformat()},
        )
        usage = raw.get("usage") if isinstance(raw, dict) else None
        if not isinstance(usage, dict):
            return []
        totals = {"calls": 0, "calls_connected": 0, "talk_time_seconds": 0}
        for stats in usage.values():
            if not isinstance(stats, dict):
                continue
            totals["calls"] += as_int(stats.get("calls"))
            totals["calls_connected"] += as_int(stats.get("connected"))
            # talktime is reported in minutes
            totals["talk_time_seconds"] += as_int(stats.get("talktime")) * 60
        return [HistoricalRow(period_start=start, period_end=end, counts=totals)]
