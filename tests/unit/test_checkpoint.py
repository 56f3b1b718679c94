"""Tests for the checkpoint store: merge-patch, generation guard, stop handling."""
import json

import pytest
from sqlmodel import Session

from outreach.models.connection import SyncConnection, SyncStatus
from outreach.sync.checkpoint import (
    MAX_STORED_ERRORS,
    CheckpointStore,
    ConnectionNotFoundError,
    StaleCheckpointError,
    merge_patch,
)


class TestMergePatch:
    def test_nested_dicts_merge(self):
        base = {"historical": {"chunk_index": 3, "total_chunks": 9}, "phase": "historical"}
        result = merge_patch(base, {"entities": {"index": 5}, "phase": "entities"})
        assert result == {
            "historical": {"chunk_index": 3, "total_chunks": 9},
            "entities": {"index": 5},
            "phase": "entities",
        }

    def test_sibling_fields_of_a_section_survive(self):
        base = {"historical": {"chunk_index": 3, "window_end": "2026-01-01"}}
        result = merge_patch(base, {"historical": {"chunk_index": 4}})
        assert result["historical"] == {"chunk_index": 4, "window_end": "2026-01-01"}

    def test_none_deletes_key(self):
        result = merge_patch({"listing": {"items": [1, 2], "page": 2}}, {"listing": {"items": None}})
        assert result == {"listing": {"page": 2}}

    def test_lists_are_replaced(self):
        result = merge_patch({"errors": ["a"]}, {"errors": ["a", "b"]})
        assert result["errors"] == ["a", "b"]

    def test_base_is_not_mutated(self):
        base = {"entities": {"index": 1}}
        merge_patch(base, {"entities": {"index": 2}})
        assert base == {"entities": {"index": 1}}


class TestCheckpointStore:
    def test_load_missing_connection(self, engine):
        with pytest.raises(ConnectionNotFoundError):
            CheckpointStore(engine).load(999)

    def test_save_merges_and_stamps_heartbeat(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        store.save(seeded_connection.id, {"historical": {"chunk_index": 2}})
        cp = store.save(seeded_connection.id, {"entities": {"index": 7}})
        assert cp.section("historical") == {"chunk_index": 2}
        assert cp.section("entities") == {"index": 7}
        assert cp.heartbeat is not None

    def test_save_sets_status_and_columns(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        cp = store.save(seeded_connection.id, {}, status=SyncStatus.PARTIAL.value)
        assert cp.status == "partial"

    def test_stale_generation_rejected(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        store.save(seeded_connection.id, {"entities": {"index": 1}}, generation=0)
        with Session(engine) as s:
            row = s.get(SyncConnection, seeded_connection.id)
            row.generation = 1
            s.add(row)
            s.commit()

        with pytest.raises(StaleCheckpointError):
            store.save(seeded_connection.id, {"entities": {"index": 99}}, generation=0)
        assert store.load(seeded_connection.id).section("entities") == {"index": 1}

    def test_matching_generation_accepted(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        cp = store.save(seeded_connection.id, {"phase": "entities"}, generation=0)
        assert cp.phase == "entities"
        assert cp.generation == 0

    def test_replace_overwrites_progress(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        store.save(seeded_connection.id, {"entities": {"index": 5}, "phase": "entities"})
        cp = store.save(seeded_connection.id, {"message": "done"}, replace=True)
        assert "entities" not in cp.progress
        assert cp.progress["message"] == "done"

    def test_errors_are_capped(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        errors = [f"error {i}" for i in range(MAX_STORED_ERRORS + 20)]
        cp = store.save(seeded_connection.id, {"errors": errors})
        assert len(cp.progress["errors"]) == MAX_STORED_ERRORS
        assert cp.progress["errors"][-1] == f"error {MAX_STORED_ERRORS + 19}"

    def test_stop_is_not_overwritten_by_runner(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        store.request_stop(seeded_connection.id)
        cp = store.save(seeded_connection.id, {"entities": {"index": 3}}, status=SyncStatus.PARTIAL.value)
        assert cp.status == "stopped"
        # Progress still lands; only the status is protected
        assert cp.section("entities") == {"index": 3}

    def test_explicit_override_leaves_stopped(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        store.request_stop(seeded_connection.id)
        cp = store.save(seeded_connection.id, {}, status="syncing", preserve_stopped=False)
        assert cp.status == "syncing"

    def test_status_of_reads_fresh_value(self, engine, seeded_connection):
        store = CheckpointStore(engine)
        assert store.status_of(seeded_connection.id) == "idle"
        store.request_stop(seeded_connection.id)
        assert store.status_of(seeded_connection.id) == "stopped"

    def test_find_active_ignores_inactive_rows(self, engine, seeded_connection):
        with Session(engine) as s:
            s.add(SyncConnection(tenant_id="t1", platform="replyio", credential_encrypted="x", is_active=False))
            s.commit()
        store = CheckpointStore(engine)
        assert store.find_active("t1", "replyio") is None
        assert store.find_active("t1", "smartlead").connection_id == seeded_connection.id

    def test_unreadable_progress_treated_as_empty(self, engine, seeded_connection):
        with Session(engine) as s:
            row = s.get(SyncConnection, seeded_connection.id)
            row.sync_progress = "{not json"
            s.add(row)
            s.commit()
        cp = CheckpointStore(engine).save(seeded_connection.id, {"phase": "listing"})
        assert cp.progress["phase"] == "listing"
        with Session(engine) as s:
            assert json.loads(s.get(SyncConnection, seeded_connection.id).sync_progress)["phase"] == "listing"
