from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING

from .types import SyncState

if TYPE_CHECKING:
    from ..source.reader import SourceLocation
    from ._store import ChatStore


def _row_to_state(row: sqlite3.Row) -> SyncState:
    try:
        ids = json.loads(row["last_seen_conversation_ids"] or "[]")
    except json.JSONDecodeError:
        ids = []
    return SyncState(
        location_key=row["location_key"],
        path=row["path"],
        kind=row["kind"],
        workspace_id=row["workspace_id"],
        last_seen_conversation_ids={str(item) for item in ids},
        last_seen_conversation_count=int(row["last_seen_conversation_count"]),
        last_seen_total_messages=int(row["last_seen_total_messages"]),
        last_sync_at=row["last_sync_at"],
        consecutive_empty_ticks=int(row["consecutive_empty_ticks"]),
        wipe_state=row["wipe_state"],
        wipe_state_changed_at=row["wipe_state_changed_at"],
        ever_non_empty=bool(row["ever_non_empty"]),
        last_error=row["last_error"],
        last_error_kind=row["last_error_kind"],
        last_error_at=row["last_error_at"],
        corrupt_count=int(row["corrupt_count"]),
        unavailable_count=int(row["unavailable_count"]),
        skipped_records=int(row["skipped_records"]),
    )


def get_sync_state(store: ChatStore, location_key: str) -> SyncState | None:
    row = store.conn.execute(
        "SELECT * FROM sync_state WHERE location_key = ?", (location_key,)
    ).fetchone()
    if row is None:
        return None
    return _row_to_state(row)


def list_sync_states(store: ChatStore) -> list[SyncState]:
    rows = store.conn.execute("SELECT * FROM sync_state ORDER BY location_key").fetchall()
    return [_row_to_state(row) for row in rows]


def ensure_sync_state(store: ChatStore, location: SourceLocation, *, now: str) -> SyncState:
    existing = get_sync_state(store, location.key)
    if existing is not None:
        return existing
    with store.transaction():
        store.conn.execute(
            """
            INSERT INTO sync_state(location_key, path, kind, workspace_id, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(location_key) DO NOTHING
            """,
            (location.key, str(location.path), location.kind, location.workspace_id, now),
        )
    state = get_sync_state(store, location.key)
    if state is None:
        raise RuntimeError(f"Failed to create sync state for {location.key}")
    return state


def save_sync_state(store: ChatStore, state: SyncState, *, now: str) -> None:
    with store.transaction():
        store.conn.execute(
            """
            UPDATE sync_state SET
                path = ?,
                kind = ?,
                workspace_id = ?,
                last_seen_conversation_ids = ?,
                last_seen_conversation_count = ?,
                last_seen_total_messages = ?,
                last_sync_at = ?,
                consecutive_empty_ticks = ?,
                wipe_state = ?,
                wipe_state_changed_at = ?,
                ever_non_empty = ?,
                last_error = ?,
                last_error_kind = ?,
                last_error_at = ?,
                corrupt_count = ?,
                unavailable_count = ?,
                skipped_records = ?,
                updated_at = ?
            WHERE location_key = ?
            """,
            (
                state.path,
                state.kind,
                state.workspace_id,
                json.dumps(sorted(state.last_seen_conversation_ids)),
                state.last_seen_conversation_count,
                state.last_seen_total_messages,
                state.last_sync_at,
                state.consecutive_empty_ticks,
                state.wipe_state,
                state.wipe_state_changed_at,
                1 if state.ever_non_empty else 0,
                state.last_error,
                state.last_error_kind,
                state.last_error_at,
                state.corrupt_count,
                state.unavailable_count,
                state.skipped_records,
                now,
                state.location_key,
            ),
        )


def record_source_error(
    store: ChatStore, location: SourceLocation, *, kind: str, message: str, now: str
) -> SyncState:
    state = ensure_sync_state(store, location, now=now)
    state.last_error = message
    state.last_error_kind = kind
    state.last_error_at = now
    if kind == "corrupt":
        state.corrupt_count += 1
    else:
        state.unavailable_count += 1
    save_sync_state(store, state, now=now)
    return state


def historical_sources(store: ChatStore) -> list[str]:
    rows = store.conn.execute(
        "SELECT location_key FROM sync_state WHERE ever_non_empty = 1 ORDER BY location_key"
    ).fetchall()
    return [row["location_key"] for row in rows]
