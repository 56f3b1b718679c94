"""Tests for upstream normalization helpers. No DB, no network."""
from datetime import date, datetime

from outreach.platforms.normalizer import (
    Recognized,
    Unrecognized,
    as_int,
    chunks,
    classify_email_type,
    classify_reply_sentiment,
    email_domain,
    event_idempotency_key,
    extract_placeholders,
    first_present,
    map_event_type,
    parse_date,
    parse_timestamp,
    status_rank,
    unwrap_items,
    word_count,
)

ACTIVITY_KEYS = ("contact_activities", "contact_activity", "activities", "data")


class TestUnwrapItems:
    def test_bare_list(self):
        result = unwrap_items([{"id": 1}, {"id": 2}, "junk"])
        assert isinstance(result, Recognized)
        assert [r["id"] for r in result.items] == [1, 2]

    def test_none_is_empty(self):
        assert unwrap_items(None).items == []

    def test_keyed_list_with_meta(self):
        result = unwrap_items({"data": [{"id": 1}], "total_pages": 3}, ("data",))
        assert result.items == [{"id": 1}]
        assert result.meta["total_pages"] == 3

    def test_nested_envelope(self):
        raw = {"contact_activities": {"contact_activities": [{"activity_id": 41}], "total_pages": 2}}
        result = unwrap_items(raw, ACTIVITY_KEYS)
        assert result.items == [{"activity_id": 41}]
        assert result.meta["total_pages"] == 2

    def test_single_record_under_singular_key(self):
        raw = {"contact_activities": {"contact_activity": {"activity_id": 42, "user_activity_id": "u1"}}}
        result = unwrap_items(raw, ACTIVITY_KEYS)
        assert result.items == [{"activity_id": 42, "user_activity_id": "u1"}]

    def test_double_wrapped_list(self):
        result = unwrap_items({"members": [[{"id": "a"}]]}, ("members",))
        assert result.items == [{"id": "a"}]

    def test_unknown_shape(self):
        result = unwrap_items({"weird": {"stuff": 1}}, ("data",))
        assert isinstance(result, Unrecognized)
        assert result.keys == ["weird"]

    def test_scalar_is_unrecognized(self):
        assert isinstance(unwrap_items("oops"), Unrecognized)


class TestText:
    def test_placeholders_in_first_seen_order(self):
        text = "Hi {{first_name}}, saw {{ company }} is hiring. {{first_name}}?"
        assert extract_placeholders(text) == ["first_name", "company"]

    def test_word_count(self):
        assert word_count("one two  three") == 3
        assert word_count(None) == 0

    def test_email_domain_and_type(self):
        assert email_domain("Jane@Acme.IO") == "acme.io"
        assert email_domain("not-an-email") is None
        assert classify_email_type("bob@gmail.com") == "personal"
        assert classify_email_type("bob@acme.io") == "work"
        assert classify_email_type(None) is None


class TestReplySentiment:
    def test_negative_phrase_wins_over_positive_keyword(self):
        assert classify_reply_sentiment("Not interested, thanks") == "negative"

    def test_positive(self):
        assert classify_reply_sentiment("Sure, let's schedule a call") == "positive"

    def test_unsubscribe(self):
        assert classify_reply_sentiment("please unsubscribe me") == "negative"

    def test_neutral(self):
        assert classify_reply_sentiment("Who is this?") == "neutral"
        assert classify_reply_sentiment(None) == "neutral"

    def test_keywords_match_whole_words_only(self):
        assert classify_reply_sentiment("Your team is unstoppable, yes let's talk") == "positive"
        assert classify_reply_sentiment("I removed the old vendor, available Tuesday") == "positive"

    def test_not_sure_is_negative(self):
        assert classify_reply_sentiment("Not sure this is a fit for us") == "negative"

    def test_remove_me_is_negative(self):
        assert classify_reply_sentiment("Please remove me from this list") == "negative"


class TestMapping:
    def test_event_types(self):
        assert map_event_type("OPEN") == "opened"
        assert map_event_type("reply") == "replied"
        assert map_event_type(" bounced ") == "bounced"
        assert map_event_type("LINKEDIN_VIEW") == "unknown"
        assert map_event_type(None) == "unknown"

    def test_status_rank_orders_active_first(self):
        ranks = [status_rank(s) for s in ("ACTIVE", "paused", "drafted", "completed", "archived", None)]
        assert ranks == sorted(ranks)
        assert ranks[0] == 0
        assert ranks[-1] == 4


class TestDates:
    def test_iso_with_z_becomes_naive_utc(self):
        assert parse_timestamp("2026-01-05T10:00:00Z") == datetime(2026, 1, 5, 10, 0, 0)

    def test_offset_is_converted(self):
        assert parse_timestamp("2026-01-05T12:00:00+02:00") == datetime(2026, 1, 5, 10, 0, 0)

    def test_space_separated_with_fraction(self):
        assert parse_timestamp("2026-01-05 10:00:00.123") == datetime(2026, 1, 5, 10, 0, 0, 123000)

    def test_epoch_seconds(self):
        assert parse_timestamp(0) == datetime(1970, 1, 1)

    def test_garbage(self):
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp("") is None
        assert parse_timestamp({"a": 1}) is None

    def test_parse_date(self):
        assert parse_date("2026-03-01T23:00:00Z") == date(2026, 3, 1)
        assert parse_date(None) is None


class TestIdempotencyKey:
    def test_stable_for_same_inputs(self):
        ts = datetime(2026, 1, 5, 10, 0)
        assert event_idempotency_key("lead1", "1:OPEN", ts) == event_idempotency_key("lead1", "1:OPEN", ts)

    def test_differs_per_component(self):
        ts = datetime(2026, 1, 5, 10, 0)
        base = event_idempotency_key("lead1", "1:OPEN", ts)
        assert base != event_idempotency_key("lead2", "1:OPEN", ts)
        assert base != event_idempotency_key("lead1", "2:OPEN", ts)
        assert base != event_idempotency_key("lead1", "1:OPEN", datetime(2026, 1, 5, 10, 1))

    def test_fits_column(self):
        assert len(event_idempotency_key("a", "b", "c")) == 40


class TestMisc:
    def test_first_present_skips_empty(self):
        record = {"email": "", "lead_email": None, "primary_email": "x@y.z"}
        assert first_present(record, "email", "lead_email", "primary_email") == "x@y.z"
        assert first_present({}, "a", default="d") == "d"

    def test_as_int(self):
        assert as_int("12") == 12
        assert as_int(3.9) == 3
        assert as_int(None) == 0
        assert as_int("n/a") == 0

    def test_chunks(self):
        assert [list(c) for c in chunks(list(range(5)), 2)] == [[0, 1], [2, 3], [4]]
