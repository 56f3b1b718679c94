"""
Phase pipeline: listing → historical → entities → subentities → events.

Each phase owns one top-level key of the checkpoint and advances its own
cursor one unit at a time (a listing page, a date chunk, an entity, an
event page). Before every unit it asks the context whether to stop; after
every unit it persists the cursor, so an interrupted run resumes at the
first unit that was not committed.

Every write is an idempotent upsert keyed by a natural key, so a unit that
is replayed after a crash between "write rows" and "save cursor" only
re-merges the same rows.
"""
import json
import logging
import re
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session, select

from outreach.analysis.copy_features import extract_copy_features
from outreach.db.upsert import insert_if_absent, upsert
from outreach.models.connection import utcnow
from outreach.models.engagement import EngagementEvent, Lead
from outreach.models.entity import Entity, SequenceStep, Variant, VariantFeatures
from outreach.models.metrics import DailyMetric, HistoricalStat
from outreach.platforms.base import EventPage, LeadRecord, StepRecord
from outreach.platforms.normalizer import (
    Unrecognized,
    chunks,
    classify_email_type,
    classify_reply_sentiment,
    email_domain,
    event_idempotency_key,
    extract_placeholders,
    word_count,
)
from outreach.sync.context import FATAL_ERRORS, ConnectionLevelError, SyncContext
from outreach.sync.http_client import CredentialError, UpstreamError

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


class Phase:
    """One stage of the pipeline. run() returns True when the phase is finished."""

    name = ""

    async def run(self, ctx: SyncContext) -> bool:
        raise NotImplementedError

    def skip_current(self, ctx: SyncContext) -> Optional[str]:
        """Move the cursor past the current unit (force_advance). Returns what was skipped."""
        return None

    def weight(self, progress: Dict[str, Any]) -> float:
        """Fraction of this phase completed, 0.0 to 1.0, from checkpoint data."""
        return 0.0


def _order(ctx: SyncContext) -> List[Dict[str, Any]]:
    return list(ctx.checkpoint.section("listing").get("order") or [])


def _entity_row(session: Session, ctx: SyncContext, platform_id: str) -> Optional[Entity]:
    return session.exec(
        select(Entity)
        .where(Entity.tenant_id == ctx.tenant_id)
        .where(Entity.platform == ctx.platform)
        .where(Entity.platform_id == platform_id)
    ).first()


async def _isolated(ctx: SyncContext, label: str, coro) -> bool:
    """
    Await one unit of work. Per-item failures are recorded and swallowed so
    the remaining items still sync; connection-level failures propagate.
    """
    try:
        await coro
        return True
    except FATAL_ERRORS:
        raise
    except Exception as exc:
        ctx.record_error(f"{label}: {exc}")
        return False


# ─── Listing ──────────────────────────────────────────────────────────────────

class ListingPhase(Phase):
    """
    Page through the platform's entity listing, upsert Entity rows, and cache
    the deterministic processing order in the checkpoint. Every later phase
    walks that cached order, so one pass sees a stable entity set.
    """

    name = "listing"

    async def run(self, ctx: SyncContext) -> bool:
        section = ctx.checkpoint.section("listing")
        if section.get("done"):
            return True

        page = int(section.get("page", 0))
        items: List[Dict[str, Any]] = list(section.get("items") or [])
        seen = {item["id"] for item in items}

        while True:
            if ctx.should_stop():
                return False
            try:
                result = await ctx.adapter.list_entities(page)
            except CredentialError:
                raise
            except UpstreamError as exc:
                raise ConnectionLevelError(f"entity listing failed: {exc}") from exc

            with Session(ctx.engine) as s:
                for record in result.records:
                    upsert(
                        s,
                        Entity,
                        {"tenant_id": ctx.tenant_id, "platform": ctx.platform, "platform_id": record.platform_id},
                        {
                            "kind": ctx.adapter.entity_kind,
                            "name": record.name,
                            "status": record.status,
                            "upstream_created_at": record.created_at,
                            "raw_json": json.dumps(record.raw, default=str),
                        },
                    )
                s.commit()

            for record in result.records:
                if record.platform_id not in seen:
                    seen.add(record.platform_id)
                    items.append(record.to_cache())
            page += 1
            logger.info("[%s/%s] Listed %d entities so far", ctx.tenant_id, ctx.platform, len(items))

            if not result.has_more or not result.records:
                order = ctx.adapter.order_entities(items)
                ctx.counts["listed"] = len(order)
                ctx.save({
                    "listing": {"done": True, "page": page, "items": None, "order": order, "total": len(order)},
                })
                return True
            ctx.save({"listing": {"page": page, "items": items}})

    def weight(self, progress: Dict[str, Any]) -> float:
        return 1.0 if (progress.get("listing") or {}).get("done") else 0.0


# ─── Historical backfill ──────────────────────────────────────────────────────

def build_chunks(window_end: date, lookback_days: int, chunk_days: int) -> List[Tuple[date, date]]:
    """
    Split [window_end - lookback_days, window_end] into fixed-size ranges,
    oldest first. The last chunk may be shorter.
    """
    start = window_end - timedelta(days=lookback_days)
    result = []
    cursor = start
    while cursor <= window_end:
        end = min(cursor + timedelta(days=chunk_days - 1), window_end)
        result.append((cursor, end))
        cursor = end + timedelta(days=1)
    return result


class HistoricalPhase(Phase):
    """Backfill tenant-wide statistics over the lookback window, one chunk per unit."""

    name = "historical"

    async def run(self, ctx: SyncContext) -> bool:
        if not ctx.adapter.supports_historical:
            return True
        section = ctx.checkpoint.section("historical")
        if section.get("done"):
            return True

        # Anchor the window on first entry so chunk boundaries survive midnight
        window_end = date.fromisoformat(section["window_end"]) if section.get("window_end") else utcnow().date()
        date_chunks = build_chunks(window_end, ctx.historical_lookback_days, ctx.historical_chunk_days)
        index = int(section.get("chunk_index", 0))
        entity_ids = [item["id"] for item in _order(ctx)]

        while index < len(date_chunks):
            if ctx.should_stop():
                return False
            start, end = date_chunks[index]
            await _isolated(ctx, f"historical chunk {start}..{end}", self._sync_chunk(ctx, start, end, entity_ids))
            index += 1
            ctx.save({
                "historical": {
                    "chunk_index": index,
                    "total_chunks": len(date_chunks),
                    "window_end": window_end.isoformat(),
                },
            })

        ctx.save({"historical": {"done": True}})
        return True

    async def _sync_chunk(self, ctx: SyncContext, start: date, end: date, entity_ids: List[str]) -> None:
        adapter = ctx.adapter
        if adapter.historical_per_entity:
            if not entity_ids:
                return
            batches = [list(b) for b in chunks(entity_ids, adapter.historical_id_batch)]
        else:
            batches = [[]]

        # Sum per period across id batches before writing
        merged: Dict[date, Dict[str, Any]] = {}
        for batch in batches:
            for row in await adapter.fetch_historical(start, end, batch):
                slot = merged.setdefault(row.period_start, {"period_end": row.period_end})
                for key, value in row.counts.items():
                    slot[key] = slot.get(key, 0) + value

        with Session(ctx.engine) as s:
            for period_start, values in merged.items():
                upsert(
                    s,
                    HistoricalStat,
                    {"tenant_id": ctx.tenant_id, "platform": ctx.platform, "period_start": period_start},
                    values,
                )
            s.commit()
        ctx.count("historical_rows", len(merged))

    def skip_current(self, ctx: SyncContext) -> Optional[str]:
        section = ctx.checkpoint.section("historical")
        if section.get("done"):
            return None
        index = int(section.get("chunk_index", 0))
        ctx.save({"historical": {"chunk_index": index + 1}})
        return f"historical chunk {index}"

    def weight(self, progress: Dict[str, Any]) -> float:
        section = progress.get("historical") or {}
        if section.get("done"):
            return 1.0
        total = section.get("total_chunks") or 0
        return min(1.0, section.get("chunk_index", 0) / total) if total else 0.0


# ─── Entities ─────────────────────────────────────────────────────────────────

def _upsert_lead(session: Session, ctx: SyncContext, lead: LeadRecord) -> Lead:
    return upsert(
        session,
        Lead,
        {"tenant_id": ctx.tenant_id, "platform": ctx.platform, "platform_id": lead.platform_id},
        {
            "email": lead.email,
            "first_name": lead.first_name,
            "last_name": lead.last_name,
            "company": lead.company,
            "title": lead.title,
            "linkedin_url": lead.linkedin_url,
            "phone": lead.phone,
            "industry": lead.industry,
            "location": lead.location,
            "email_domain": email_domain(lead.email),
            "email_type": classify_email_type(lead.email),
            "status": lead.status,
            "updated_at": utcnow(),
        },
    )


class _CursorPhase(Phase):
    """Phase that walks the cached entity order with an "index" cursor."""

    def _index(self, ctx: SyncContext) -> int:
        return int(ctx.checkpoint.section(self.name).get("index", 0))

    def skip_current(self, ctx: SyncContext) -> Optional[str]:
        order = _order(ctx)
        index = self._index(ctx)
        if index >= len(order):
            return None
        ctx.save({self.name: {"index": index + 1, "total": len(order)}})
        return f"{ctx.adapter.entity_kind} {order[index].get('name') or order[index]['id']}"

    def weight(self, progress: Dict[str, Any]) -> float:
        section = progress.get(self.name) or {}
        total = section.get("total") or len((progress.get("listing") or {}).get("order") or [])
        return min(1.0, section.get("index", 0) / total) if total else 0.0


class EntityPhase(_CursorPhase):
    """Per entity: refresh the row and store today's analytics snapshot."""

    name = "entities"

    async def run(self, ctx: SyncContext) -> bool:
        order = _order(ctx)
        index = self._index(ctx)
        while index < len(order):
            if ctx.should_stop():
                return False
            item = order[index]
            label = f"{ctx.adapter.entity_kind} {item.get('name') or item['id']}"
            if await _isolated(ctx, label, self._sync_entity(ctx, item)):
                ctx.count("entities")
            index += 1
            ctx.save({self.name: {"index": index, "total": len(order)}})
        return True

    async def _sync_entity(self, ctx: SyncContext, item: Dict[str, Any]) -> None:
        snapshot = await ctx.adapter.fetch_analytics(item["id"])
        with Session(ctx.engine) as s:
            entity = _entity_row(s, ctx, item["id"])
            if entity is None:
                raise LookupError(f"entity {item['id']} missing from store")
            entity.synced_at = utcnow()
            s.add(entity)

            if snapshot:
                upsert(
                    s,
                    DailyMetric,
                    {
                        "tenant_id": ctx.tenant_id,
                        "platform": ctx.platform,
                        "entity_id": entity.id,
                        "metric_date": utcnow().date(),
                    },
                    snapshot,
                )
                ctx.count("metrics")

            lead = ctx.adapter.entity_lead(json.loads(entity.raw_json or "{}"))
            if lead is not None:
                _upsert_lead(s, ctx, lead)
                ctx.count("leads")
            s.commit()


# ─── Sub-entities ─────────────────────────────────────────────────────────────

_TAG_RE = re.compile(r"<[^>]*>")


def _plain_text(body: str) -> str:
    return re.sub(r"\s+", " ", _TAG_RE.sub(" ", body or "")).strip()


class SubEntityPhase(_CursorPhase):
    """Per detail-worthy entity: sequence steps, copy variants and their features."""

    name = "subentities"

    async def run(self, ctx: SyncContext) -> bool:
        if not ctx.adapter.has_subentities:
            return True
        order = _order(ctx)
        index = self._index(ctx)
        while index < len(order):
            if ctx.should_stop():
                return False
            item = order[index]
            if ctx.adapter.wants_detail(item):
                label = f"{ctx.adapter.entity_kind} {item.get('name') or item['id']} steps"
                await _isolated(ctx, label, self._sync_steps(ctx, item))
            index += 1
            ctx.save({self.name: {"index": index, "total": len(order)}})
        return True

    async def _sync_steps(self, ctx: SyncContext, item: Dict[str, Any]) -> None:
        result = await ctx.adapter.fetch_steps(item["id"])
        if isinstance(result, Unrecognized):
            ctx.record_error(
                f"{ctx.adapter.entity_kind} {item['id']}: unrecognized steps response (keys: {result.keys})"
            )
            return

        with Session(ctx.engine) as s:
            entity = _entity_row(s, ctx, item["id"])
            if entity is None:
                raise LookupError(f"entity {item['id']} missing from store")
            for step in result:
                self._write_step(s, ctx, entity, step)
            s.commit()

    def _write_step(self, s: Session, ctx: SyncContext, entity: Entity, step: StepRecord) -> None:
        upsert(
            s,
            SequenceStep,
            {
                "tenant_id": ctx.tenant_id,
                "platform": ctx.platform,
                "entity_id": entity.id,
                "step_number": step.step_number,
            },
            {"step_type": step.step_type, "delay_days": step.delay_days},
        )
        ctx.count("steps")

        for variant in step.variants:
            text = _plain_text(variant.body)
            placeholders = extract_placeholders(f"{variant.subject or ''} {variant.body}")
            row = upsert(
                s,
                Variant,
                {"tenant_id": ctx.tenant_id, "platform": ctx.platform, "platform_id": variant.platform_id},
                {
                    "entity_id": entity.id,
                    "step_number": step.step_number,
                    "name": f"Step {step.step_number} - {variant.label}",
                    "label": variant.label,
                    "subject": variant.subject,
                    "body": variant.body,
                    "body_preview": text[:PREVIEW_CHARS],
                    "word_count": word_count(text),
                    "personalization_vars": json.dumps(placeholders),
                    "is_control": step.step_number == 1 and variant.label == "A",
                },
            )
            features = extract_copy_features(variant.subject, variant.body)
            upsert(
                s,
                VariantFeatures,
                {"variant_id": row.id},
                {
                    "tenant_id": ctx.tenant_id,
                    "platform": ctx.platform,
                    "subject_word_count": features["subject_word_count"],
                    "subject_spam_score": features["subject_spam_score"],
                    "body_word_count": features["body_word_count"],
                    "body_cta_type": features["body_cta_type"],
                    "body_tone": features["body_tone"],
                    "body_reading_grade": features["body_reading_grade"],
                    "features_json": json.dumps(features),
                    "extracted_at": utcnow(),
                },
            )
            ctx.count("variants")


# ─── Engagement events ────────────────────────────────────────────────────────

class EventPhase(Phase):
    """Per entity, page through leads and engagement events. Cursor: entity_index + page."""

    name = "events"

    async def run(self, ctx: SyncContext) -> bool:
        order = _order(ctx)
        section = ctx.checkpoint.section(self.name)
        entity_index = int(section.get("entity_index", 0))
        page = int(section.get("page", 0))

        while entity_index < len(order):
            if ctx.should_stop():
                return False
            item = order[entity_index]
            label = f"{ctx.adapter.entity_kind} {item.get('name') or item['id']} events page {page}"

            outcome: Dict[str, Any] = {}
            await _isolated(ctx, label, self._sync_page(ctx, item, page, outcome))
            if outcome.get("has_more"):
                page += 1
            else:
                entity_index += 1
                page = 0
            ctx.save({self.name: {"entity_index": entity_index, "page": page, "total": len(order)}})
        return True

    async def _sync_page(self, ctx: SyncContext, item: Dict[str, Any], page: int, outcome: Dict[str, Any]) -> None:
        result: EventPage = await ctx.adapter.fetch_event_page(item["id"], page)
        for message in result.errors:
            ctx.record_error(message)

        with Session(ctx.engine) as s:
            entity = _entity_row(s, ctx, item["id"])
            if entity is None:
                raise LookupError(f"entity {item['id']} missing from store")

            for lead in result.leads:
                _upsert_lead(s, ctx, lead)
            ctx.count("leads", len(result.leads))

            step_variants = self._step_variant_map(s, entity.id)
            created = 0
            for event in result.events:
                key = event_idempotency_key(event.lead_platform_id, event.mapping_id, event.occurred_at)
                _, was_created = insert_if_absent(
                    s,
                    EngagementEvent,
                    {"tenant_id": ctx.tenant_id, "platform": ctx.platform, "idempotency_key": key},
                    {
                        "entity_id": entity.id,
                        "lead_platform_id": event.lead_platform_id,
                        "variant_id": step_variants.get(event.step_number) if event.step_number else None,
                        "event_type": event.event_type,
                        "occurred_at": event.occurred_at,
                        "reply_text": event.reply_text,
                        "reply_sentiment": (
                            classify_reply_sentiment(event.reply_text) if event.event_type == "replied" else None
                        ),
                        "duration_seconds": event.duration_seconds,
                        "disposition": event.disposition,
                        "recording_url": event.recording_url,
                    },
                )
                created += int(was_created)
            s.commit()

        ctx.count("events", created)
        outcome["has_more"] = result.has_more

    @staticmethod
    def _step_variant_map(s: Session, entity_id: int) -> Dict[int, int]:
        """step number → id of the step's first variant (by label)."""
        rows = s.exec(
            select(Variant).where(Variant.entity_id == entity_id).order_by(Variant.step_number, Variant.label)
        ).all()
        mapping: Dict[int, int] = {}
        for row in rows:
            mapping.setdefault(row.step_number, row.id)
        return mapping

    def skip_current(self, ctx: SyncContext) -> Optional[str]:
        order = _order(ctx)
        index = int(ctx.checkpoint.section(self.name).get("entity_index", 0))
        if index >= len(order):
            return None
        ctx.save({self.name: {"entity_index": index + 1, "page": 0, "total": len(order)}})
        return f"{ctx.adapter.entity_kind} {order[index].get('name') or order[index]['id']} events"

    def weight(self, progress: Dict[str, Any]) -> float:
        section = progress.get(self.name) or {}
        total = section.get("total") or len((progress.get("listing") or {}).get("order") or [])
        return min(1.0, section.get("entity_index", 0) / total) if total else 0.0


PIPELINE: List[Phase] = [ListingPhase(), HistoricalPhase(), EntityPhase(), SubEntityPhase(), EventPhase()]
PHASE_NAMES = [phase.name for phase in PIPELINE]


def phase_by_name(name: Optional[str]) -> Phase:
    for phase in PIPELINE:
        if phase.name == name:
            return phase
    return PIPELINE[0]


async def run_pipeline(ctx: SyncContext) -> str:
    """
    Run phases from the checkpoint's current phase onward.

    Returns:
        "complete" when every phase finished, otherwise ctx.stop_reason
        ("budget" or "stopped").
    """
    start = PHASE_NAMES.index(phase_by_name(ctx.checkpoint.phase).name)

    if ctx.force_advance:
        skipped = PIPELINE[start].skip_current(ctx)
        if skipped:
            logger.info("[%s/%s] Force-advanced past %s", ctx.tenant_id, ctx.platform, skipped)
            ctx.record_error(f"skipped {skipped} (force advance)")

    for position in range(start, len(PIPELINE)):
        phase = PIPELINE[position]
        if ctx.checkpoint.phase != phase.name:
            logger.info("[%s/%s] Entering phase %s", ctx.tenant_id, ctx.platform, phase.name)
            ctx.save({"phase": phase.name})
        finished = await phase.run(ctx)
        if not finished:
            return ctx.stop_reason or "budget"
    return "complete"
