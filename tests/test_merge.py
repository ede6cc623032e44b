from __future__ import annotations

from chatkeeper.merge import MergeEngine, compute_diff
from chatkeeper.source import SourceReader


def _merge(store, location, clock):
    snapshot = SourceReader().read(location)
    return MergeEngine(clock=clock).merge(store, snapshot)


def test_first_merge_captures_everything(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 5)
    cursor_db.add_conversation("c2", 2)

    result = _merge(store, global_location, clock)

    assert len(result.diff.new_conversations) == 2
    assert store.counts()["messages"] == 7
    assert store.conversation_ids_for_location("global") == ["c1", "c2"]
    stored = store.get_conversation("c1")
    assert stored is not None
    assert [m.content for m in stored.messages][:2] == ["c1 message 0", "c1 message 1"]
    assert store.get_backup_record("c1").byte_size > 0


def test_merging_the_same_snapshot_twice_changes_nothing(
    store, cursor_db, global_location, clock, dump_tables
) -> None:
    cursor_db.add_conversation("c1", 3)
    cursor_db.add_conversation("c2", 4, workspace_dir="/home/dev/project")
    _merge(store, global_location, clock)
    before = dump_tables(store)

    clock.advance(minutes=5)
    result = _merge(store, global_location, clock)

    assert not result.diff.has_changes
    assert sorted(result.diff.unchanged) == ["c1", "c2"]
    assert dump_tables(store) == before


def test_longer_source_appends_only_the_tail(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 2)
    _merge(store, global_location, clock)
    first_updated = store.get_conversation("c1").updated_at

    cursor_db.append_message("c1", "one more thing")
    clock.advance(minutes=1)
    result = _merge(store, global_location, clock)

    assert result.diff.appended_message_count == 1
    stored = store.get_conversation("c1")
    assert [m.sequence for m in stored.messages] == [0, 1, 2]
    assert stored.messages[-1].content == "one more thing"
    assert stored.updated_at > first_updated


def test_shorter_source_never_loses_history(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 4)
    _merge(store, global_location, clock)

    cursor_db.truncate("c1", keep=1)
    result = _merge(store, global_location, clock)

    assert result.diff.diverged == ["c1"]
    assert store.get_conversation("c1").message_count == 4


def test_rewritten_message_is_flagged_not_applied(
    store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 3)
    _merge(store, global_location, clock)

    cursor_db.set_text("c1", 1, "edited answer")
    result = _merge(store, global_location, clock)

    assert result.diff.diverged == ["c1"]
    assert store.get_conversation("c1").messages[1].content == "c1 message 1"


def test_divergent_longer_copy_replaces_stored(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 2)
    _merge(store, global_location, clock)

    cursor_db.set_text("c1", 1, "regenerated answer")
    cursor_db.append_message("c1", "follow-up")
    result = _merge(store, global_location, clock)

    assert [conversation.id for conversation in result.diff.replaced] == ["c1"]
    stored = store.get_conversation("c1")
    assert [m.content for m in stored.messages] == [
        "c1 message 0",
        "regenerated answer",
        "follow-up",
    ]


def test_same_conversation_from_two_locations_is_stored_once(
    store, cursor_db, workspace_db, global_location, clock
) -> None:
    from chatkeeper.source import discover_locations

    cursor_db.add_conversation("c1", 3)
    workspace_db.add_conversation("c1", 3)
    workspace_location = discover_locations(str(workspace_db.path.parents[3]))[1]

    _merge(store, global_location, clock)
    result = _merge(store, workspace_location, clock)

    assert result.diff.unchanged == ["c1"]
    assert store.counts()["conversations"] == 1
    assert store.conversation_ids_for_location("workspace:abc123") == ["c1"]
    assert store.get_conversation("c1").workspace_id == "abc123"


def test_workspace_members_assign_global_conversations(
    store, cursor_db, workspace_db, global_location, clock
) -> None:
    from chatkeeper.source import discover_locations

    cursor_db.add_conversation("g1", 2)
    workspace_db.set_workspace_composers(["g1"])
    workspace_location = discover_locations(str(workspace_db.path.parents[3]))[1]

    _merge(store, global_location, clock)
    result = _merge(store, workspace_location, clock)

    assert result.workspaces_assigned == 1
    assert store.get_conversation("g1").workspace_id == "abc123"
    assert store.list_workspaces()[0]["path"] == "/home/dev/project"


def test_pruned_conversation_is_not_recaptured(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 3)
    _merge(store, global_location, clock)
    with store.transaction():
        store.delete_conversation("c1", reason="retention", now=clock().isoformat())

    diff = compute_diff(store, SourceReader().read(global_location))
    assert diff.tombstoned == ["c1"]

    cursor_db.append_message("c1", "it continues")
    result = _merge(store, global_location, clock)

    assert result.diff.resurrected == ["c1"]
    assert store.get_conversation("c1").message_count == 4
    assert store.get_tombstones(["c1"]) == {}


def test_appends_to_compressed_conversations_stay_readable(
    store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 2)
    _merge(store, global_location, clock)
    with store.transaction():
        store.compress_conversation("c1", now=clock().isoformat())

    cursor_db.append_message("c1", "after compression")
    _merge(store, global_location, clock)

    stored = store.get_conversation("c1")
    assert [m.content for m in stored.messages] == [
        "c1 message 0",
        "c1 message 1",
        "after compression",
    ]
    assert store.get_backup_record("c1").compressed is True


def test_encoding_failure_rolls_back_only_its_conversation(
    monkeypatch, store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 2)
    cursor_db.add_conversation("c2", 2)
    original = store.insert_conversation

    def _insert(conversation, **kwargs):
        if conversation.id == "c2":
            raise UnicodeEncodeError("utf-8", "\ud83d", 0, 1, "surrogates not allowed")
        original(conversation, **kwargs)

    monkeypatch.setattr(store, "insert_conversation", _insert)

    result = _merge(store, global_location, clock)

    assert set(result.errors) == {"c2"}
    assert "surrogates" in result.errors["c2"]
    assert store.get_conversation("c1") is not None
    assert store.get_conversation("c2") is None
