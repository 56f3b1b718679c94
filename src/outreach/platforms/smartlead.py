"""
Smartlead adapter.

Campaigns are the entities. Auth is an api_key query parameter; Smartlead
allows roughly 10 requests / 2s, so every attempt waits 450ms first.
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
    StepRecord,
    StepsResult,
    VariantRecord,
)
from outreach.platforms.normalizer import (
    Recognized,
    as_int,
    first_present,
    map_event_type,
    parse_date,
    parse_timestamp,
    unwrap_items,
)
from outreach.sync.http_client import ApiProfile

logger = logging.getLogger(__name__)

SMARTLEAD_PROFILE = ApiProfile(
    base_url="https://server.smartlead.ai/api/v1",
    request_delay=0.45,
    rate_limit_backoff=2.0,
    max_retries=3,
    auth_style="query",
    auth_name="api_key",
)

LEADS_PAGE_SIZE = 25


class SmartleadAdapter(PlatformAdapter):
    platform = "smartlead"
    entity_kind = "campaign"
    profile = SMARTLEAD_PROFILE
    time_budget_seconds = 55.0
    supports_historical = True
    has_subentities = True

    async def list_entities(self, page: int) -> EntityPage:
        # /campaigns is not paginated; one page holds everything
        raw = await self._get("/campaigns")
        shape = unwrap_items(raw, ("data", "campaigns"))
        if not isinstance(shape, Recognized):
            logger.warning("Unexpected /campaigns shape, keys=%s", shape.keys)
            return EntityPage(records=[])
        records = [
            EntityRecord(
                platform_id=str(item["id"]),
                name=item.get("name") or "",
                status=(item.get("status") or "").lower() or None,
                created_at=parse_timestamp(item.get("created_at")),
                raw=item,
            )
            for item in shape.items
            if item.get("id") is not None
        ]
        return EntityPage(records=records, has_more=False)

    def wants_detail(self, item: Dict[str, Any]) -> bool:
        return (item.get("status") or "").lower() in ("active", "paused")

    async def fetch_analytics(self, platform_id: str) -> Optional[Dict[str, int]]:
        stats = await self._get(f"/campaigns/{platform_id}/analytics")
        if not isinstance(stats, dict):
            return None
        return {
            "sent_count": as_int(stats.get("sent_count")),
            "opened_count": as_int(stats.get("unique_open_count")),
            "clicked_count": as_int(stats.get("unique_click_count")),
            "replied_count": as_int(stats.get("reply_count")),
            "positive_reply_count": as_int(
                first_present(stats, "positive_reply_count", "interested_count", default=0)
            ),
            "bounced_count": as_int(stats.get("bounce_count")),
        }

    async def fetch_steps(self, platform_id: str) -> StepsResult:
        raw = await self._get(f"/campaigns/{platform_id}/sequences")
        shape = unwrap_items(raw, ("data", "sequences"))
        if not isinstance(shape, Recognized):
            return shape

        steps: List[StepRecord] = []
        for seq in shape.items:
            seq_number = as_int(seq.get("seq_number")) or len(steps) + 1
            delay = as_int((seq.get("seq_delay_details") or {}).get("delay_in_days"))
            variants = [
                VariantRecord(
                    platform_id=str(v["id"]),
                    label=v.get("variant_label") or "A",
                    subject=v.get("subject") or seq.get("subject"),
                    body=v.get("email_body") or "",
                )
                for v in seq.get("sequence_variants") or []
                if isinstance(v, dict) and v.get("id") is not None
            ]
            if not variants:
                # Single-copy step: the copy lives on the sequence itself
                variants = [
                    VariantRecord(
                        platform_id=f"seq_{platform_id}_{seq_number}",
                        label="A",
                        subject=seq.get("subject"),
                        body=seq.get("email_body") or "",
                    )
                ]
            steps.append(StepRecord(step_number=seq_number, delay_days=delay, variants=variants))
        return steps

    async def fetch_event_page(self, platform_id: str, page: int) -> EventPage:
        raw = await self._get(
            f"/campaigns/{platform_id}/leads",
            params={"offset": page * LEADS_PAGE_SIZE, "limit": LEADS_PAGE_SIZE},
        )
        shape = unwrap_items(raw, ("data", "leads"))
        if not isinstance(shape, Recognized):
            logger.warning("Unexpected leads shape for campaign %s, keys=%s", platform_id, shape.keys)
            return EventPage(has_more=False, errors=[f"campaign {platform_id}: unrecognized leads page"])

        result = EventPage(has_more=len(shape.items) >= LEADS_PAGE_SIZE)
        for item in shape.items:
            # Newer responses nest the lead under "lead" next to campaign status
            lead = item.get("lead") if isinstance(item.get("lead"), dict) else item
            email = (lead.get("email") or "").strip().lower()
            if not email:
                continue
            lead_id = str(lead.get("id") or email)
            result.leads.append(
                LeadRecord(
                    platform_id=lead_id,
                    email=email,
                    first_name=lead.get("first_name"),
                    last_name=lead.get("last_name"),
                    company=first_present(lead, "company_name", "company"),
                    title=first_present(lead, "designation", "title"),
                    linkedin_url=first_present(lead, "linkedin_profile", "linkedin_url"),
                    phone=lead.get("phone_number"),
                    industry=lead.get("industry"),
                    location=first_present(lead, "location", "city"),
                    status=first_present(item, "lead_status", "status", "category"),
                )
            )
            history = await self._isolated(
                result.errors,
                f"lead {lead_id} message history",
                self._get(f"/campaigns/{platform_id}/leads/{lead_id}/message-history"),
            )
            result.events.extend(self._history_events(lead_id, history))
        return result

    def _history_events(self, lead_id: str, history: Any) -> List[EventRecord]:
        shape = unwrap_items(history, ("history", "data"))
        if not isinstance(shape, Recognized):
            return []
        events = []
        for msg in shape.items:
            occurred_at = parse_timestamp(msg.get("time") or msg.get("sent_time"))
            if occurred_at is None:
                # No timestamp means no stable identity for the event
                continue
            raw_type = (msg.get("type") or "").upper()
            event_type = map_event_type(raw_type)
            step = as_int(msg.get("seq_number")) or 1
            events.append(
                EventRecord(
                    lead_platform_id=lead_id,
                    mapping_id=f"{step}:{raw_type}",
                    event_type=event_type,
                    occurred_at=occurred_at,
                    step_number=step,
                    reply_text=msg.get("email_body") if event_type == "replied" else None,
                )
            )
        return events

    async def fetch_historical(
        self, start: date, end: date, entity_ids: List[str]
    ) -> List[HistoricalRow]:
        raw = await self._get(
            "/analytics/day-wise-overall-stats",
            params={
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "campaign_ids": ",".join(entity_ids),
            },
        )
        shape = unwrap_items(raw, ("data", "day_wise_stats"))
        if not isinstance(shape, Recognized):
            logger.warning("Unexpected day-wise stats shape, keys=%s", shape.keys)
            return []
        rows = []
        for day in shape.items:
            day_date = parse_date(first_present(day, "date", "day"))
            if day_date is None:
                continue
            metrics = day.get("email_engagement_metrics") or day
            rows.append(
                HistoricalRow(
                    period_start=day_date,
                    period_end=day_date,
                    counts={
                        "sent_count": as_int(first_present(metrics, "sent", "sent_count", default=0)),
                        "opened_count": as_int(first_present(metrics, "opened", "open_count", default=0)),
                        "clicked_count": as_int(first_present(metrics, "clicked", "click_count", default=0)),
                        "replied_count": as_int(first_present(metrics, "replied", "reply_count", default=0)),
                        "bounced_count": as_int(first_present(metrics, "bounced", "bounce_count", default=0)),
                    },
                )
            )
        return rows
