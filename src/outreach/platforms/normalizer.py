"""
Upstream response normalizer.

Converts raw dicts from the outreach platforms into clean values that map
onto SQLModel columns. No DB access and no network here — adapters call
these helpers, the pipeline handles persistence.

Upstream envelopes are inconsistent across accounts and API versions. The
same endpoint may answer with any of:

    [ {...}, {...} ]
    {"data": [ ... ]}
    {"sequences": [ ... ]}
    {"contact_activities": {"contact_activities": [ ... ], "total_pages": 3}}
    {"contact_activities": {"contact_activity": {...}}}

unwrap_items() isolates that guessing: it returns Recognized(items) when it
finds a list under one of the candidate keys and Unrecognized(raw) when it
does not, so business logic never branches on envelope shapes itself.
"""
import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union


@dataclass
class Recognized:
    items: List[Dict[str, Any]]
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Unrecognized:
    raw: Any

    @property
    def keys(self) -> List[str]:
        return sorted(self.raw.keys()) if isinstance(self.raw, dict) else []


ShapeResult = Union[Recognized, Unrecognized]


def unwrap_items(raw: Any, keys: Sequence[str] = ("data", "items")) -> ShapeResult:
    """
    Find the list of records inside an upstream envelope.

    Args:
        raw: Parsed JSON response (None for an empty body).
        keys: Candidate envelope keys, tried in order. A candidate holding a
              dict is searched one level deeper with the same keys; a
              candidate holding a single dict record is wrapped in a list.

    Returns:
        Recognized(items, meta) where meta carries scalar siblings of the list
        (total_pages, total_results, ...), or Unrecognized(raw).
    """
    if raw is None:
        return Recognized([])
    if isinstance(raw, list):
        return Recognized([r for r in raw if isinstance(r, dict)])
    if not isinstance(raw, dict):
        return Unrecognized(raw)

    meta = {k: v for k, v in raw.items() if isinstance(v, (int, float, str, bool))}
    for key in keys:
        if key not in raw:
            continue
        value = raw[key]
        if isinstance(value, list):
            # Some accounts double-wrap: {"members": [[...]]}
            if value and isinstance(value[0], list):
                value = value[0]
            return Recognized([r for r in value if isinstance(r, dict)], meta)
        if isinstance(value, dict):
            inner = unwrap_items(value, keys)
            if isinstance(inner, Recognized):
                return Recognized(inner.items, {**meta, **inner.meta})
            # A lone record under a singular key
            if any(k.endswith("_id") or k == "id" for k in value):
                return Recognized([value], meta)
    return Unrecognized(raw)


# ─── Text helpers ─────────────────────────────────────────────────────────────

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def extract_placeholders(text: Optional[str]) -> List[str]:
    """Return personalization placeholder names ({{first_name}}) in first-seen order."""
    seen: List[str] = []
    for name in _PLACEHOLDER_RE.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def word_count(text: Optional[str]) -> int:
    return len((text or "").split())


PERSONAL_DOMAINS = frozenset({
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "protonmail.com", "mail.com", "live.com", "msn.com",
    "me.com", "ymail.com", "googlemail.com", "yahoo.co.uk", "hotmail.co.uk",
    "outlook.co.uk", "btinternet.com", "sky.com", "virgin.net", "ntlworld.com",
    "talktalk.net", "gmx.com", "gmx.net", "web.de", "zoho.com", "fastmail.com",
    "tutanota.com", "pm.me", "proton.me",
})


def email_domain(email: Optional[str]) -> Optional[str]:
    if not email or "@" not in email:
        return None
    return email.rsplit("@", 1)[1].strip().lower() or None


def classify_email_type(email: Optional[str]) -> Optional[str]:
    domain = email_domain(email)
    if domain is None:
        return None
    return "personal" if domain in PERSONAL_DOMAINS else "work"


_NEGATIVE_REPLY = re.compile(
    r"\bnot (?:interested|sure)\b|\bno thanks\b|\bunsubscribe\b|\bremove\b|\bstop\b", re.I
)
_POSITIVE_REPLY = re.compile(r"\binterested\b|\byes\b|\bsure\b|\blet's\b|\bschedule\b|\bavailable\b", re.I)


def classify_reply_sentiment(text: Optional[str]) -> str:
    """Keyword heuristic; negative phrases win over positive ones ("not interested")."""
    body = text or ""
    if _NEGATIVE_REPLY.search(body):
        return "negative"
    if _POSITIVE_REPLY.search(body):
        return "positive"
    return "neutral"


_EVENT_TYPES = {
    "SENT": "sent",
    "OPEN": "opened",
    "OPENED": "opened",
    "CLICK": "clicked",
    "CLICKED": "clicked",
    "REPLY": "replied",
    "REPLIED": "replied",
    "BOUNCE": "bounced",
    "BOUNCED": "bounced",
}


def map_event_type(raw_type: Optional[str]) -> str:
    return _EVENT_TYPES.get((raw_type or "").strip().upper(), "unknown")


# ─── Ordering ─────────────────────────────────────────────────────────────────

STATUS_RANK = {"active": 0, "paused": 1, "drafted": 2, "draft": 2, "completed": 3}


def status_rank(status: Optional[str]) -> int:
    return STATUS_RANK.get((status or "").strip().lower(), 4)


# ─── Dates ────────────────────────────────────────────────────────────────────

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse upstream timestamps into naive UTC datetimes.

    Accepts ISO 8601 (with "Z" or offset), "YYYY-MM-DD HH:MM:SS", plain dates
    and epoch seconds. Returns None for anything unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        s = value.strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            try:
                dt = datetime.strptime(s.split(".")[0], "%Y-%m-%d %H:%M:%S")
            except ValueError:
                return None
    else:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_date(value: Any) -> Optional[date]:
    dt = parse_timestamp(value)
    return dt.date() if dt else None


def event_idempotency_key(lead_id: Any, mapping_id: Any, occurred_at: Any) -> str:
    """Stable digest of (lead id, mapping id, timestamp) identifying one event."""
    ts = occurred_at.isoformat() if isinstance(occurred_at, datetime) else str(occurred_at)
    raw = f"{lead_id}|{mapping_id}|{ts}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:40]


def first_present(record: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """Return the first non-empty value among keys (upstream field names drift)."""
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return default


def as_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]
