from __future__ import annotations

from chatkeeper.merge import MergeEngine
from chatkeeper.source import SourceReader
from chatkeeper.store import WIPE_CONFIRMED, WIPE_NORMAL, WIPE_SUSPECT
from chatkeeper.wipe import WipeDetector


def _tick(store, detector, location, clock):
    snapshot = SourceReader().read(location)
    MergeEngine(clock=clock).merge(store, snapshot)
    clock.advance(minutes=2)
    return detector.observe(snapshot)


def test_wipe_is_confirmed_only_after_debounce(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 5)
    cursor_db.add_conversation("c2", 2)
    detector = WipeDetector(store, clock=clock)
    assert _tick(store, detector, global_location, clock).state == WIPE_NORMAL

    cursor_db.wipe()
    second = _tick(store, detector, global_location, clock)
    third = _tick(store, detector, global_location, clock)

    assert second.state == WIPE_SUSPECT
    assert second.restore_request_id is None
    assert third.state == WIPE_CONFIRMED
    assert third.entered_confirmed
    [request] = store.pending_restore_requests()
    assert request.id == third.restore_request_id
    assert (request.location_key, request.selector, request.reason) == ("global", "all", "wipe")
    state = store.get_sync_state("global")
    # The baseline keeps the last good snapshot while wiped.
    assert state.last_seen_conversation_count == 2
    assert state.last_seen_total_messages == 7


def test_recovery_before_confirmation_returns_to_normal(
    store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 4)
    detector = WipeDetector(store, clock=clock)
    _tick(store, detector, global_location, clock)

    cursor_db.truncate("c1", keep=1)
    assert _tick(store, detector, global_location, clock).state == WIPE_SUSPECT
    cursor_db.add_conversation("c1", 4)
    observation = _tick(store, detector, global_location, clock)

    assert observation.state == WIPE_NORMAL
    assert store.get_sync_state("global").consecutive_empty_ticks == 0
    assert store.pending_restore_requests() == []


def test_new_empty_source_is_never_wiped(store, cursor_db, global_location, clock) -> None:
    detector = WipeDetector(store, clock=clock, confirm_ticks=1)

    for _ in range(3):
        observation = _tick(store, detector, global_location, clock)

    assert observation.state == WIPE_NORMAL
    assert store.get_sync_state("global").ever_non_empty is False


def test_small_drop_is_not_low(store, cursor_db, global_location, clock) -> None:
    for index in range(4):
        cursor_db.add_conversation(f"c{index}", 2)
    detector = WipeDetector(store, clock=clock)
    _tick(store, detector, global_location, clock)

    cursor_db.remove_conversation("c0")
    observation = _tick(store, detector, global_location, clock)

    assert observation.low is False
    assert store.get_sync_state("global").last_seen_conversation_count == 3


def test_confirmed_state_is_sticky_until_acknowledged(
    store, cursor_db, global_location, clock
) -> None:
    cursor_db.add_conversation("c1", 3)
    detector = WipeDetector(store, clock=clock, confirm_ticks=1)
    _tick(store, detector, global_location, clock)
    cursor_db.wipe()
    assert _tick(store, detector, global_location, clock).state == WIPE_CONFIRMED

    cursor_db.add_conversation("fresh", 1)
    assert _tick(store, detector, global_location, clock).state == WIPE_CONFIRMED

    detector.acknowledge("global")
    observation = _tick(store, detector, global_location, clock)

    assert observation.state == WIPE_NORMAL
    state = store.get_sync_state("global")
    assert state.last_seen_conversation_ids == {"fresh"}
    assert store.pending_restore_requests() == []


def test_auto_restore_off_queues_nothing(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 3)
    detector = WipeDetector(store, clock=clock, confirm_ticks=1, auto_restore=False)
    _tick(store, detector, global_location, clock)
    cursor_db.wipe()

    observation = _tick(store, detector, global_location, clock)

    assert observation.state == WIPE_CONFIRMED
    assert store.pending_restore_requests() == []


def test_reset_bypasses_debounce(store, cursor_db, global_location, clock) -> None:
    cursor_db.add_conversation("c1", 3)
    detector = WipeDetector(store, clock=clock)
    _tick(store, detector, global_location, clock)

    request_id = detector.force_wiped(global_location)

    assert store.get_sync_state("global").wipe_state == WIPE_CONFIRMED
    [request] = store.pending_restore_requests()
    assert (request.id, request.reason) == (request_id, "reset")


def test_acknowledge_unknown_location_is_a_no_op(store, clock) -> None:
    assert WipeDetector(store, clock=clock).acknowledge("workspace:none") is None
