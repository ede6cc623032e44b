from __future__ import annotations

import sqlite3

import pytest

from chatkeeper.errors import RestorePartialFailure, RestorePreconditionFailed
from chatkeeper.merge import MergeEngine
from chatkeeper.restore import RestoreEngine, RestoreResult, RestoreSelector
from chatkeeper.source import SourceReader, SourceWriter
from chatkeeper.store import WIPE_CONFIRMED, WIPE_NORMAL
from chatkeeper.wipe import WipeDetector


def _capture(store, location, clock) -> None:
    snapshot = SourceReader().read(location)
    MergeEngine(clock=clock).merge(store, snapshot)
    WipeDetector(store, clock=clock).observe(snapshot)


def test_selector_parsing() -> None:
    assert RestoreSelector.parse("all") == RestoreSelector("all")
    assert RestoreSelector.parse("conversation:c1") == RestoreSelector("conversation", "c1")
    assert str(RestoreSelector.parse("workspace:abc")) == "workspace:abc"
    with pytest.raises(ValueError):
        RestoreSelector.parse("everything")


def test_result_status() -> None:
    assert RestoreResult("global", "all").status == "nothing_to_do"
    assert RestoreResult("global", "all", succeeded=["a"]).status == "ok"
    assert RestoreResult("global", "all", succeeded=["a"], failed={"b": "x"}).status == "partial"
    assert RestoreResult("global", "all", failed={"b": "x"}).status == "failed"


def test_restore_all_repopulates_wiped_source(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 5)
    cursor_db.add_conversation("c2", 2)
    _capture(store, global_location, clock)
    cursor_db.wipe()
    WipeDetector(store, clock=clock).force_wiped(global_location)

    result = RestoreEngine(clock=clock).restore(store, global_location, "all")

    assert result.status == "ok"
    assert sorted(result.succeeded) == ["c1", "c2"]
    snapshot = SourceReader().read(global_location)
    assert {c.id: c.message_count for c in snapshot.conversations} == {"c1": 5, "c2": 2}
    state = store.get_sync_state("global")
    assert state.wipe_state == WIPE_NORMAL
    assert state.consecutive_empty_ticks == 0
    assert state.last_seen_total_messages == 7
    assert store.pending_restore_requests() == []


def test_restore_refuses_non_empty_target(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 2)
    _capture(store, global_location, clock)
    keys_before = cursor_db.keys()

    with pytest.raises(RestorePreconditionFailed) as excinfo:
        RestoreEngine(clock=clock).restore(store, global_location, "all")

    assert excinfo.value.existing == 1
    assert cursor_db.keys() == keys_before


def test_forced_restore_is_idempotent(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 3)
    _capture(store, global_location, clock)
    engine = RestoreEngine(clock=clock)

    engine.restore(store, global_location, "conversation:c1", force=True)
    keys_once = cursor_db.keys()
    engine.restore(store, global_location, "conversation:c1", force=True)

    assert cursor_db.keys() == keys_once
    assert cursor_db.composer_count() == 1


def test_restore_into_missing_file_creates_it(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 2)
    _capture(store, global_location, clock)
    cursor_db.path.unlink()

    result = RestoreEngine(clock=clock).restore(store, global_location, "conversation:c1")

    assert result.succeeded == ["c1"]
    assert SourceReader().read(global_location).conversation_ids == {"c1"}
    # Single-conversation restores leave the wipe state alone.
    assert store.get_sync_state("global").wipe_state == WIPE_NORMAL


def test_restore_by_workspace(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 2, workspace_dir="/home/dev/project")
    cursor_db.add_conversation("c2", 2)
    _capture(store, global_location, clock)
    [workspace] = store.list_workspaces()
    cursor_db.wipe()

    result = RestoreEngine(clock=clock).restore(
        store, global_location, f"workspace:{workspace['id']}"
    )

    assert result.succeeded == ["c1"]


def test_unknown_selection_is_nothing_to_do(store, global_location, clock) -> None:
    result = RestoreEngine(clock=clock).restore(store, global_location, "conversation:nope")

    assert result.status == "nothing_to_do"


def test_partial_failure_keeps_successful_writes(
    monkeypatch, store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 2)
    cursor_db.add_conversation("c2", 2)
    _capture(store, global_location, clock)
    cursor_db.wipe()
    WipeDetector(store, clock=clock).force_wiped(global_location)
    original = SourceWriter.write_conversation

    def _flaky(self, conversation):
        if conversation.id == "c2":
            raise sqlite3.OperationalError("disk I/O error")
        return original(self, conversation)

    monkeypatch.setattr(SourceWriter, "write_conversation", _flaky)

    with pytest.raises(RestorePartialFailure) as excinfo:
        RestoreEngine(clock=clock).restore(store, global_location, "all")

    result = excinfo.value.result
    assert result.status == "partial"
    assert result.succeeded == ["c1"]
    assert "disk I/O error" in result.failed["c2"]
    assert SourceReader().read(global_location).conversation_ids == {"c1"}
    # At least one conversation came back, so the location is watched normally again.
    assert store.get_sync_state("global").wipe_state == WIPE_NORMAL


def test_total_failure_leaves_wipe_state(
    monkeypatch, store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 2)
    _capture(store, global_location, clock)
    cursor_db.wipe()
    WipeDetector(store, clock=clock).force_wiped(global_location)

    def _broken(self, conversation):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(SourceWriter, "write_conversation", _broken)

    with pytest.raises(RestorePartialFailure) as excinfo:
        RestoreEngine(clock=clock).restore(store, global_location, "all")

    assert excinfo.value.result.status == "failed"
    assert store.get_sync_state("global").wipe_state == WIPE_CONFIRMED
