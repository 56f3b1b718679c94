"""
Reply.io adapter (API v3).

Sequences are the entities. Reply.io throttles hard: listing calls wait 2s,
everything else 1s, and a 429 backs off 10s per attempt.
"""
import logging
from typing import Dict, List, Optional

from outreach.platforms.base import (
    EntityPage,
    EntityRecord,
    EventPage,
    EventRecord,
    LeadRecord,
    PlatformAdapter,
    StepRecord,
    StepsResult,
    VariantRecord,
)
from outreach.platforms.normalizer import (
    Recognized,
    as_int,
    first_present,
    parse_timestamp,
    unwrap_items,
)
from outreach.sync.http_client import ApiProfile

logger = logging.getLogger(__name__)

REPLYIO_PROFILE = ApiProfile(
    base_url="https://api.reply.io/v3",
    request_delay=1.0,
    rate_limit_backoff=10.0,
    max_retries=3,
    auth_style="header",
    auth_name="x-api-key",
)

LIST_DELAY = 2.0
LIST_PAGE_SIZE = 100
REPLIES_PAGE_SIZE = 100

_STATUS_MAP = {
    "Active": "active",
    "Paused": "paused",
    "Stopped": "stopped",
    "Draft": "draft",
    "Archived": "archived",
}


def map_sequence_status(status: Optional[str]) -> Optional[str]:
    if not status:
        return None
    return _STATUS_MAP.get(status, status.lower())


class ReplyioAdapter(PlatformAdapter):
    platform = "replyio"
    entity_kind = "sequence"
    profile = REPLYIO_PROFILE
    time_budget_seconds = 50.0
    has_subentities = True

    async def list_entities(self, page: int) -> EntityPage:
        raw = await self._get(
            "/sequences",
            params={"top": LIST_PAGE_SIZE, "skip": page * LIST_PAGE_SIZE},
            delay=LIST_DELAY,
        )
        shape = unwrap_items(raw, ("sequences", "items", "data"))
        if not isinstance(shape, Recognized):
            logger.warning("Unexpected /sequences shape, keys=%s", shape.keys)
            return EntityPage(records=[])
        records = [
            EntityRecord(
                platform_id=str(item["id"]),
                name=item.get("name") or "",
                status=map_sequence_status(item.get("status")),
                created_at=parse_timestamp(first_present(item, "created", "createdAt", "created_at")),
                raw=item,
            )
            for item in shape.items
            if item.get("id") is not None
        ]
        return EntityPage(records=records, has_more=len(shape.items) >= LIST_PAGE_SIZE)

    async def fetch_analytics(self, platform_id: str) -> Optional[Dict[str, int]]:
        stats = await self._get(f"/statistics/sequences/{platform_id}", allow_404=True)
        if not isinstance(stats, dict):
            # Archived sequences have no statistics; fall back to detail counts
            details = await self._get(f"/sequences/{platform_id}", allow_404=True)
            if not isinstance(details, dict):
                return None
            stats = {
                "deliveredContacts": first_present(details, "peopleCount", "totalPeople", default=0),
                "repliedContacts": first_present(details, "repliedCount", "replied", default=0),
                "openedContacts": first_present(details, "openedCount", "opened", default=0),
                "bouncedContacts": first_present(details, "bouncedCount", "bounced", default=0),
                "clickedContacts": first_present(details, "clickedCount", "clicked", default=0),
                "interestedContacts": first_present(details, "interestedCount", "interested", default=0),
            }

        counts = {
            "sent_count": as_int(first_present(stats, "deliveredContacts", "delivered", default=0)),
            "opened_count": as_int(first_present(stats, "openedContacts", "opened", default=0)),
            "clicked_count": as_int(first_present(stats, "clickedContacts", "clicked", default=0)),
            "replied_count": as_int(first_present(stats, "repliedContacts", "replied", default=0)),
            "positive_reply_count": as_int(first_present(stats, "interestedContacts", "interested", default=0)),
            "bounced_count": as_int(first_present(stats, "bouncedContacts", "bounced", default=0)),
        }
        if not counts["sent_count"] and not counts["replied_count"]:
            logger.info("Skipping empty metrics for sequence %s", platform_id)
            return None
        return counts

    async def fetch_steps(self, platform_id: str) -> StepsResult:
        raw = await self._get(f"/sequences/{platform_id}/steps", allow_404=True)
        shape = unwrap_items(raw, ("steps", "items", "data"))
        if not isinstance(shape, Recognized):
            return shape

        steps: List[StepRecord] = []
        for index, step in enumerate(shape.items, start=1):
            number = as_int(first_present(step, "number", "stepNumber", default=index)) or index
            step_type = (step.get("type") or "email").lower()
            templates = step.get("templates") or step.get("variants") or []
            variants = []
            for pos, tpl in enumerate(t for t in templates if isinstance(t, dict)):
                label = chr(ord("A") + pos) if pos < 26 else str(pos + 1)
                variants.append(
                    VariantRecord(
                        platform_id=str(first_present(tpl, "id", default=f"step_{platform_id}_{number}_{label}")),
                        label=label,
                        subject=tpl.get("subject"),
                        body=first_present(tpl, "body", "text", default="") or "",
                    )
                )
            if not variants and (step.get("subject") or step.get("body")):
                variants.append(
                    VariantRecord(
                        platform_id=f"step_{platform_id}_{number}",
                        label="A",
                        subject=step.get("subject"),
                        body=step.get("body") or "",
                    )
                )
            delay = as_int(first_present(step, "delayInDays", "delay_in_days", default=0))
            steps.append(StepRecord(step_number=number, delay_days=delay, step_type=step_type, variants=variants))
        return steps

    async def fetch_event_page(self, platform_id: str, page: int) -> EventPage:
        raw = await self._get(
            f"/sequences/{platform_id}/replies",
            params={"top": REPLIES_PAGE_SIZE, "skip": page * REPLIES_PAGE_SIZE},
            allow_404=True,
        )
        shape = unwrap_items(raw, ("replies", "items", "data"))
        if not isinstance(shape, Recognized):
            logger.warning("Unexpected replies shape for sequence %s, keys=%s", platform_id, shape.keys)
            return EventPage(has_more=False, errors=[f"sequence {platform_id}: unrecognized replies page"])

        result = EventPage(has_more=len(shape.items) >= REPLIES_PAGE_SIZE)
        for reply in shape.items:
            contact = reply.get("contact") if isinstance(reply.get("contact"), dict) else reply
            email = (first_present(contact, "email", "contactEmail") or "").strip().lower()
            if not email:
                continue
            lead_id = str(first_present(contact, "contactId", "id", default=email))
            occurred_at = parse_timestamp(first_present(reply, "replyDate", "date", "createdAt"))
            result.leads.append(
                LeadRecord(
                    platform_id=lead_id,
                    email=email,
                    first_name=first_present(contact, "firstName", "first_name"),
                    last_name=first_present(contact, "lastName", "last_name"),
                    company=first_present(contact, "company", "companyName"),
                    title=first_present(contact, "title", "jobTitle"),
                    linkedin_url=first_present(contact, "linkedInProfile", "linkedin_url"),
                    phone=contact.get("phone"),
                    location=first_present(contact, "city", "country"),
                )
            )
            if occurred_at is None:
                continue
            step = as_int(first_present(reply, "stepNumber", "step", default=0)) or None
            result.events.append(
                EventRecord(
                    lead_platform_id=lead_id,
                    mapping_id=f"{step or 0}:REPLY",
                    event_type="replied",
                    occurred_at=occurred_at,
                    step_number=step,
                    reply_text=first_present(reply, "text", "body", "message"),
                )
            )
        return result
