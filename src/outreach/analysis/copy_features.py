"""
Copy feature extraction for email variants.

Pure functions over subject line + body text; the sub-entity phase stores
the result on VariantFeatures so copy analysis can compare variants without
re-parsing bodies.
"""
import re
from typing import Any, Dict, List, Optional

SPAM_TRIGGERS = (
    "free", "guarantee", "no obligation", "winner", "cash", "urgent",
    "act now", "limited time", "exclusive deal", "click here", "buy now",
    "order now", "don't miss", "special promotion", "amazing", "incredible",
)

_TOKEN_RE = re.compile(r"\{\{?(\w+)\}?\}")
_TAG_RE = re.compile(r"<[^>]*>")
_LINK_RE = re.compile(r"https?://[^\s<]+")
_EMOJI_RE = re.compile("[\U0001F300-\U0001F9FF☀-⛿✀-➿]")
_BULLET_RE = re.compile(r"^\s*[-•*]\s", re.M)


def _first_word_type(words: List[str]) -> str:
    if not words:
        return "other"
    first = words[0].lower()
    if re.match(r"^(hey|hi|hello)", first):
        return "greeting"
    if re.match(r"^(who|what|when|where|why|how|is|are|do|does|can|could|would)", first):
        return "question"
    if re.match(r"^(quick|just|re:|fwd:)", first):
        return "casual"
    if re.match(r"^\{\{?first_?name\}?\}?$", words[0], re.I):
        return "name"
    if re.match(r"^\{\{?company\}?\}?$", words[0], re.I):
        return "company"
    return "other"


def _capitalization_style(subject: str, words: List[str]) -> str:
    if subject == subject.lower():
        return "lowercase"
    if subject == subject.upper():
        return "uppercase"
    if all(w[0] == w[0].upper() for w in words):
        return "title_case"
    if words and words[0][0] == words[0][0].upper() and all(
        w[0] == w[0].lower() or w.startswith("{{") for w in words[1:]
    ):
        return "sentence_case"
    return "mixed"


def _cta_type(body: str) -> str:
    if re.search(r"monday|tuesday|wednesday|thursday|friday", body, re.I) and re.search(r"\bor\b", body, re.I):
        return "choice_ask"
    if re.search(r"open to|would you be|interested in", body, re.I):
        return "soft_ask"
    if re.search(r"schedule|book|calendar|15 min|30 min|call", body, re.I):
        return "direct_ask"
    if re.search(r"send you|share with you|want me to|can i send", body, re.I):
        return "value_ask"
    if re.search(r"who handles|who owns|who should|right person|point me", body, re.I):
        return "referral_ask"
    if "?" in body:
        return "question_only"
    return "no_cta"


def _tone(body: str) -> str:
    lower = body.lower()
    if re.search(r"hope this|just wanted|thought i'd|reaching out", lower):
        return "casual"
    if re.search(r"dear|sincerely|regards|respectfully", lower):
        return "formal"
    if re.search(r"help you|solve|challenge|struggle|pain", lower):
        return "consultative"
    return "direct"


def extract_copy_features(subject_line: Optional[str], email_body: Optional[str]) -> Dict[str, Any]:
    """
    Compute structural and stylistic features of one email variant.

    Args:
        subject_line: Subject text (may contain {{placeholders}}).
        email_body: Body text, HTML allowed.

    Returns:
        Flat dict of subject_* and body_* features.
    """
    subject = subject_line or ""
    body = email_body or ""

    subject_words = subject.split()
    subject_tokens = list(_TOKEN_RE.finditer(subject))
    spam_hits = sum(1 for trigger in SPAM_TRIGGERS if trigger in subject.lower())

    body_clean = re.sub(r"\s+", " ", _TAG_RE.sub(" ", body)).strip()
    body_words = body_clean.split()
    sentences = [s for s in re.split(r"[.!?]+", body_clean) if s.strip()]
    body_tokens = _TOKEN_RE.findall(body)
    token_types = sorted({t.lower() for t in body_tokens})

    cta_position = "end"
    last_question = body_clean.rfind("?")
    if last_question > 0:
        relative = last_question / len(body_clean)
        if relative < 0.33:
            cta_position = "beginning"
        elif relative < 0.66:
            cta_position = "middle"

    avg_sentence_len = len(body_words) / len(sentences) if sentences else 0.0
    avg_word_len = len(body_clean.replace(" ", "")) / len(body_words) if body_words else 0.0
    reading_grade = max(0.0, min(18.0, 0.39 * avg_sentence_len + 11.8 * (avg_word_len / 5) - 15.59))
    link_count = len(_LINK_RE.findall(body))

    return {
        "subject_char_count": len(subject),
        "subject_word_count": len(subject_words),
        "subject_is_question": subject.strip().endswith("?"),
        "subject_has_number": bool(re.search(r"\d", subject)),
        "subject_has_emoji": bool(_EMOJI_RE.search(subject)),
        "subject_personalization_position": subject_tokens[0].start() if subject_tokens else None,
        "subject_personalization_count": len(subject_tokens),
        "subject_first_word_type": _first_word_type(subject_words),
        "subject_capitalization_style": _capitalization_style(subject, subject_words),
        "subject_spam_score": min(100, spam_hits * 15),
        "body_word_count": len(body_words),
        "body_sentence_count": len(sentences),
        "body_avg_sentence_length": round(avg_sentence_len, 2),
        "body_reading_grade": round(reading_grade, 2),
        "body_personalization_density": round(len(body_tokens) / len(body_words), 4) if body_words else 0,
        "body_personalization_types": token_types,
        "body_has_link": link_count > 0,
        "body_link_count": link_count,
        "body_has_calendar_link": bool(
            re.search(r"calendly\.com|cal\.com|hubspot\.com/meetings|chili ?piper", body, re.I)
        ),
        "body_cta_type": _cta_type(body),
        "body_cta_position": cta_position,
        "body_question_count": body.count("?"),
        "body_has_proof": bool(
            re.search(r"\d+%|\d+ clients|\d+ companies|trusted by|featured in|as seen|case study", body, re.I)
        ),
        "body_tone": _tone(body),
        "body_paragraph_count": len([p for p in re.split(r"\n\s*\n", body) if p.strip()]),
        "body_bullet_point_count": len(_BULLET_RE.findall(body)),
    }
