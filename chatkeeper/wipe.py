"""Per-location wipe detection.

Each source location moves through ``normal -> suspect -> confirmed_wiped``.
A tick counts as low when the snapshot falls below a fraction of the last
good snapshot; the state is persisted on the location's sync state so the
debounce survives restarts.
"""

from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .source.reader import SourceLocation, SourceSnapshot
from .store import WIPE_CONFIRMED, WIPE_NORMAL, WIPE_SUSPECT, ChatStore, SyncState, WipeState

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.5
DEFAULT_CONFIRM_TICKS = 2
SELECTOR_ALL = "all"


@dataclass(frozen=True)
class WipeObservation:
    location_key: str
    previous_state: WipeState
    state: WipeState
    low: bool
    consecutive_low_ticks: int
    restore_request_id: int | None = None

    @property
    def entered_confirmed(self) -> bool:
        return self.previous_state != WIPE_CONFIRMED and self.state == WIPE_CONFIRMED


def is_low_tick(state: SyncState, snapshot: SourceSnapshot, threshold: float) -> bool:
    conversations_dropped = (
        state.last_seen_conversation_count > 0
        and snapshot.conversation_count < threshold * state.last_seen_conversation_count
    )
    messages_dropped = (
        state.last_seen_total_messages > 0
        and snapshot.total_messages < threshold * state.last_seen_total_messages
    )
    return conversations_dropped or messages_dropped


def adopt_baseline(state: SyncState, snapshot: SourceSnapshot) -> None:
    state.last_seen_conversation_ids = snapshot.conversation_ids
    state.last_seen_conversation_count = snapshot.conversation_count
    state.last_seen_total_messages = snapshot.total_messages
    if snapshot.conversation_count > 0:
        state.ever_non_empty = True


class WipeDetector:
    def __init__(
        self,
        store: ChatStore,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        confirm_ticks: int = DEFAULT_CONFIRM_TICKS,
        auto_restore: bool = True,
        clock: Callable[[], dt.datetime] | None = None,
    ):
        self.store = store
        self.threshold = threshold
        self.confirm_ticks = max(1, confirm_ticks)
        self.auto_restore = auto_restore
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    def _now(self) -> str:
        return self._clock().isoformat()

    def has_history(self, state: SyncState) -> bool:
        """Only a location that once held conversations still backed by the store can be wiped."""
        return state.ever_non_empty and self.store.linked_conversation_count(state.location_key) > 0

    def observe(self, snapshot: SourceSnapshot) -> WipeObservation:
        now = self._now()
        location = snapshot.location
        state = self.store.ensure_sync_state(location, now=now)
        previous = state.wipe_state
        low = self.has_history(state) and is_low_tick(state, snapshot, self.threshold)

        if previous == WIPE_CONFIRMED:
            # Leaves only through restore or acknowledge.
            if low:
                state.consecutive_empty_ticks += 1
        elif low:
            state.consecutive_empty_ticks += 1
            if state.consecutive_empty_ticks >= self.confirm_ticks:
                state.wipe_state = WIPE_CONFIRMED
            else:
                state.wipe_state = WIPE_SUSPECT
        else:
            state.consecutive_empty_ticks = 0
            state.wipe_state = WIPE_NORMAL

        if state.wipe_state == WIPE_NORMAL:
            adopt_baseline(state, snapshot)
        if state.wipe_state != previous:
            state.wipe_state_changed_at = now
        state.last_sync_at = now
        state.skipped_records = snapshot.skipped_records
        state.last_error = None
        state.last_error_kind = None
        self.store.save_sync_state(state, now=now)

        request_id = None
        if state.wipe_state != previous:
            log = logger.warning if state.wipe_state != WIPE_NORMAL else logger.info
            log(
                "%s: %s -> %s (%d conversations, %d messages; last good %d/%d)",
                location.key,
                previous,
                state.wipe_state,
                snapshot.conversation_count,
                snapshot.total_messages,
                state.last_seen_conversation_count,
                state.last_seen_total_messages,
            )
            if state.wipe_state == WIPE_CONFIRMED and self.auto_restore:
                request_id = self.store.queue_restore_request(
                    location.key, selector=SELECTOR_ALL, reason="wipe", now=now
                )
        return WipeObservation(
            location_key=location.key,
            previous_state=previous,
            state=state.wipe_state,
            low=low,
            consecutive_low_ticks=state.consecutive_empty_ticks,
            restore_request_id=request_id,
        )

    def force_wiped(self, location: SourceLocation, *, reason: str = "reset") -> int:
        """Caller-invoked reset: confirm the wipe now, without waiting for the debounce.

        Returns the id of the queued restore request.
        """
        now = self._now()
        state = self.store.ensure_sync_state(location, now=now)
        if state.wipe_state != WIPE_CONFIRMED:
            state.wipe_state_changed_at = now
        state.wipe_state = WIPE_CONFIRMED
        state.consecutive_empty_ticks = max(state.consecutive_empty_ticks, self.confirm_ticks)
        self.store.save_sync_state(state, now=now)
        logger.warning("%s: marked confirmed_wiped by %s", location.key, reason)
        return self.store.queue_restore_request(
            location.key, selector=SELECTOR_ALL, reason=reason, now=now
        )

    def acknowledge(self, location_key: str) -> SyncState | None:
        """Accept the current source contents as the new normal.

        The baseline is cleared so the next observation adopts whatever the
        source holds; pending restore requests for the location are dropped.
        """
        now = self._now()
        state = self.store.get_sync_state(location_key)
        if state is None:
            return None
        previous = state.wipe_state
        state.wipe_state = WIPE_NORMAL
        state.consecutive_empty_ticks = 0
        state.last_seen_conversation_ids = set()
        state.last_seen_conversation_count = 0
        state.last_seen_total_messages = 0
        if previous != WIPE_NORMAL:
            state.wipe_state_changed_at = now
        self.store.save_sync_state(state, now=now)
        self.store.finish_pending_for_location(
            location_key, status="superseded", detail="acknowledged", now=now
        )
        logger.info("%s: acknowledged (%s -> normal)", location_key, previous)
        return state

    def mark_restored(self, location: SourceLocation, snapshot: SourceSnapshot) -> SyncState:
        now = self._now()
        state = self.store.ensure_sync_state(location, now=now)
        if state.wipe_state != WIPE_NORMAL:
            state.wipe_state_changed_at = now
        state.wipe_state = WIPE_NORMAL
        state.consecutive_empty_ticks = 0
        adopt_baseline(state, snapshot)
        self.store.save_sync_state(state, now=now)
        self.store.finish_pending_for_location(
            location.key, status="superseded", detail="restored", now=now
        )
        return state
