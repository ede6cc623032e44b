from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from pathlib import Path
from typing import Any

DEFAULT_DB_PATH = Path("~/.chatkeeper/storage.db").expanduser()
BUSY_TIMEOUT_S = 10.0


def connect(db_path: Path | str, check_same_thread: bool = True) -> sqlite3.Connection:
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Autocommit mode: the store opens BEGIN IMMEDIATE / SAVEPOINT itself.
    conn = sqlite3.connect(
        path,
        check_same_thread=check_same_thread,
        timeout=BUSY_TIMEOUT_S,
        isolation_level=None,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS workspaces (
            id TEXT PRIMARY KEY,
            path TEXT NOT NULL UNIQUE,
            display_name TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS conversations (
            id TEXT PRIMARY KEY,
            workspace_id TEXT REFERENCES workspaces(id) ON DELETE SET NULL,
            title TEXT NOT NULL,
            model_name TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            message_count INTEGER NOT NULL DEFAULT 0,
            metadata_json TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_conversations_updated ON conversations(updated_at);
        CREATE INDEX IF NOT EXISTS idx_conversations_workspace ON conversations(workspace_id);

        CREATE TABLE IF NOT EXISTS messages (
            conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            sequence INTEGER NOT NULL,
            message_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content BLOB NOT NULL,
            encoding TEXT NOT NULL DEFAULT 'plain',
            content_hash TEXT NOT NULL,
            created_at TEXT,
            metadata_json TEXT,
            PRIMARY KEY (conversation_id, sequence)
        );

        CREATE TABLE IF NOT EXISTS conversation_sources (
            location_key TEXT NOT NULL,
            conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
            message_count INTEGER NOT NULL,
            first_seen_at TEXT NOT NULL,
            PRIMARY KEY (location_key, conversation_id)
        );
        CREATE INDEX IF NOT EXISTS idx_conversation_sources_conv
            ON conversation_sources(conversation_id);

        CREATE TABLE IF NOT EXISTS backup_records (
            conversation_id TEXT PRIMARY KEY REFERENCES conversations(id) ON DELETE CASCADE,
            byte_size INTEGER NOT NULL,
            compressed INTEGER NOT NULL DEFAULT 0,
            last_backed_up_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tombstones (
            conversation_id TEXT PRIMARY KEY,
            message_count INTEGER NOT NULL,
            reason TEXT NOT NULL,
            pruned_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_state (
            location_key TEXT PRIMARY KEY,
            path TEXT NOT NULL,
            kind TEXT NOT NULL,
            workspace_id TEXT,
            last_seen_conversation_ids TEXT NOT NULL DEFAULT '[]',
            last_seen_conversation_count INTEGER NOT NULL DEFAULT 0,
            last_seen_total_messages INTEGER NOT NULL DEFAULT 0,
            last_sync_at TEXT,
            consecutive_empty_ticks INTEGER NOT NULL DEFAULT 0,
            wipe_state TEXT NOT NULL DEFAULT 'normal',
            wipe_state_changed_at TEXT,
            ever_non_empty INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            last_error_kind TEXT,
            last_error_at TEXT,
            corrupt_count INTEGER NOT NULL DEFAULT 0,
            unavailable_count INTEGER NOT NULL DEFAULT 0,
            skipped_records INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS restore_requests (
            id INTEGER PRIMARY KEY,
            location_key TEXT NOT NULL,
            selector TEXT NOT NULL,
            reason TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            requested_at TEXT NOT NULL,
            completed_at TEXT,
            detail TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_restore_requests_status ON restore_requests(status);

        CREATE TABLE IF NOT EXISTS daemon_heartbeat (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            pid INTEGER,
            state TEXT NOT NULL DEFAULT 'stopped',
            started_at TEXT,
            stopped_at TEXT,
            last_tick_at TEXT,
            last_tick_status TEXT,
            last_tick_error TEXT,
            last_traceback TEXT,
            tick_count INTEGER NOT NULL DEFAULT 0
        );
        """
    )


def to_json(data: Any) -> str:
    if data is None:
        payload: Any = {}
    else:
        payload = data
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def from_json(text: str | None) -> dict[str, Any]:
    if not text:
        return {}
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return {}


def rows_to_dicts(rows: Iterable[sqlite3.Row]) -> list[dict[str, Any]]:
    return [dict(r) for r in rows]
