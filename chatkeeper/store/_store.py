from __future__ import annotations

import contextlib
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .. import db
from . import backups as store_backups
from . import conversations as store_conversations
from . import restore_requests as store_restore_requests
from . import sync_state as store_sync_state
from .types import (
    BackupRecord,
    Conversation,
    Message,
    RestoreRequest,
    StoredMessageKey,
    SyncState,
    Workspace,
)
from .utils import now_iso

if TYPE_CHECKING:
    from ..source.reader import SourceLocation


class ChatStore:
    """Canonical store: every conversation ever captured from a source location.

    All writes go through ``transaction()``, which serializes writers on one
    re-entrant lock and nests as SQLite savepoints.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = False,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)
        self._write_lock = threading.RLock()
        self._savepoint_seq = 0

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            if self.conn.in_transaction:
                self._savepoint_seq += 1
                name = f"sp_{self._savepoint_seq}"
                self.conn.execute(f"SAVEPOINT {name}")
                try:
                    yield self.conn
                except BaseException:
                    self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
                    self.conn.execute(f"RELEASE SAVEPOINT {name}")
                    raise
                self.conn.execute(f"RELEASE SAVEPOINT {name}")
                return
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def close(self) -> None:
        self.conn.close()

    # Conversations

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return store_conversations.get_conversation(self, conversation_id)

    def load_message_keys(
        self, conversation_ids: Sequence[str]
    ) -> dict[str, list[StoredMessageKey]]:
        return store_conversations.load_message_keys(self, conversation_ids)

    def insert_conversation(
        self, conversation: Conversation, *, workspace_id: str | None, now: str
    ) -> None:
        store_conversations.insert_conversation(
            self, conversation, workspace_id=workspace_id, now=now
        )

    def append_messages(
        self, conversation: Conversation, messages: Sequence[Message], *, now: str
    ) -> None:
        store_conversations.append_messages(self, conversation, messages, now=now)

    def replace_messages(self, conversation: Conversation, *, now: str) -> None:
        store_conversations.replace_messages(self, conversation, now=now)

    def assign_workspace(self, conversation_id: str, workspace_id: str) -> bool:
        return store_conversations.assign_workspace(self, conversation_id, workspace_id)

    def link_source(
        self, location_key: str, conversation_id: str, message_count: int, *, now: str
    ) -> None:
        store_conversations.link_source(
            self, location_key, conversation_id, message_count, now=now
        )

    def list_conversations(
        self,
        *,
        workspace_id: str | None = None,
        limit: int = 20,
        min_messages: int = 1,
    ) -> list[dict[str, Any]]:
        return store_conversations.list_conversations(
            self, workspace_id=workspace_id, limit=limit, min_messages=min_messages
        )

    def match_conversation_ids(self, prefix: str, *, limit: int = 5) -> list[str]:
        return store_conversations.match_conversation_ids(self, prefix, limit=limit)

    def conversation_ids_for_location(self, location_key: str) -> list[str]:
        return store_conversations.conversation_ids_for_location(self, location_key)

    def conversation_ids_for_workspace(self, workspace_id: str) -> list[str]:
        return store_conversations.conversation_ids_for_workspace(self, workspace_id)

    def linked_conversation_count(self, location_key: str) -> int:
        return store_conversations.linked_conversation_count(self, location_key)

    def delete_conversation(self, conversation_id: str, *, reason: str, now: str) -> int:
        return store_conversations.delete_conversation(
            self, conversation_id, reason=reason, now=now
        )

    def get_tombstones(self, conversation_ids: Sequence[str]) -> dict[str, int]:
        return store_conversations.get_tombstones(self, conversation_ids)

    def drop_tombstone(self, conversation_id: str) -> None:
        store_conversations.drop_tombstone(self, conversation_id)

    def counts(self) -> dict[str, int]:
        return store_conversations.counts(self)

    # Workspaces

    def resolve_workspace(
        self,
        path: str,
        *,
        workspace_id: str | None = None,
        display_name: str | None = None,
        now: str,
    ) -> str:
        return store_conversations.resolve_workspace(
            self, path, workspace_id=workspace_id, display_name=display_name, now=now
        )

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return store_conversations.get_workspace(self, workspace_id)

    def list_workspaces(self) -> list[dict[str, Any]]:
        return store_conversations.list_workspaces(self)

    # Backup records

    def get_backup_record(self, conversation_id: str) -> BackupRecord | None:
        return store_backups.get_backup_record(self, conversation_id)

    def total_backup_bytes(self) -> int:
        return store_backups.total_backup_bytes(self)

    def lifecycle_candidates(self) -> list[dict[str, Any]]:
        return store_backups.lifecycle_candidates(self)

    def compress_conversation(self, conversation_id: str, *, now: str) -> int:
        return store_backups.compress_conversation(self, conversation_id, now=now)

    def storage_totals(self) -> dict[str, int]:
        return store_backups.storage_totals(self)

    # Sync state

    def get_sync_state(self, location_key: str) -> SyncState | None:
        return store_sync_state.get_sync_state(self, location_key)

    def list_sync_states(self) -> list[SyncState]:
        return store_sync_state.list_sync_states(self)

    def ensure_sync_state(self, location: SourceLocation, *, now: str) -> SyncState:
        return store_sync_state.ensure_sync_state(self, location, now=now)

    def save_sync_state(self, state: SyncState, *, now: str) -> None:
        store_sync_state.save_sync_state(self, state, now=now)

    def record_source_error(
        self, location: SourceLocation, *, kind: str, message: str, now: str
    ) -> SyncState:
        return store_sync_state.record_source_error(
            self, location, kind=kind, message=message, now=now
        )

    def historical_sources(self) -> list[str]:
        return store_sync_state.historical_sources(self)

    # Restore requests

    def queue_restore_request(
        self, location_key: str, *, selector: str, reason: str, now: str
    ) -> int:
        return store_restore_requests.queue_restore_request(
            self, location_key, selector=selector, reason=reason, now=now
        )

    def pending_restore_requests(self) -> list[RestoreRequest]:
        return store_restore_requests.pending_restore_requests(self)

    def finish_restore_request(
        self, request_id: int, *, status: str, detail: str | None, now: str
    ) -> None:
        store_restore_requests.finish_restore_request(
            self, request_id, status=status, detail=detail, now=now
        )

    def finish_pending_for_location(
        self, location_key: str, *, status: str, detail: str | None, now: str
    ) -> int:
        return store_restore_requests.finish_pending_for_location(
            self, location_key, status=status, detail=detail, now=now
        )

    # Daemon heartbeat

    def get_heartbeat(self) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM daemon_heartbeat WHERE id = 1").fetchone()
        if row is None:
            return None
        return dict(row)

    def set_heartbeat_state(self, state: str, *, pid: int | None = None) -> None:
        now = now_iso()
        started_at = now if state == "starting" else None
        stopped_at = now if state == "stopped" else None
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO daemon_heartbeat(id, pid, state, started_at, stopped_at)
                VALUES (1, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    pid = COALESCE(excluded.pid, daemon_heartbeat.pid),
                    state = excluded.state,
                    started_at = COALESCE(excluded.started_at, daemon_heartbeat.started_at),
                    stopped_at = excluded.stopped_at
                """,
                (pid, state, started_at, stopped_at),
            )

    def record_tick(
        self, *, status: str, error: str | None = None, traceback_text: str | None = None
    ) -> None:
        now = now_iso()
        with self.transaction():
            self.conn.execute(
                """
                INSERT INTO daemon_heartbeat(
                    id, last_tick_at, last_tick_status, last_tick_error, last_traceback, tick_count
                )
                VALUES (1, ?, ?, ?, ?, 1)
                ON CONFLICT(id) DO UPDATE SET
                    last_tick_at = excluded.last_tick_at,
                    last_tick_status = excluded.last_tick_status,
                    last_tick_error = excluded.last_tick_error,
                    last_traceback = excluded.last_traceback,
                    tick_count = daemon_heartbeat.tick_count + 1
                """,
                (now, status, error, traceback_text),
            )

    def stats(self) -> dict[str, Any]:
        size_bytes = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {
            "database": {
                "path": str(self.db_path),
                "size_bytes": size_bytes,
                **self.counts(),
            },
            "backup": self.storage_totals(),
        }
