from __future__ import annotations

import hashlib
from collections.abc import Iterable, Sequence
from pathlib import PurePath
from typing import TYPE_CHECKING, Any

from .. import db
from .types import Conversation, Message, StoredMessageKey, Workspace
from .utils import decode_content, encode_content

if TYPE_CHECKING:
    from ._store import ChatStore

IN_CHUNK = 500


def _chunks(values: Sequence[str], size: int = IN_CHUNK) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


def workspace_id_for_path(path: str) -> str:
    return hashlib.sha256(path.encode("utf-8")).hexdigest()[:16]


def resolve_workspace(
    store: ChatStore,
    path: str,
    *,
    workspace_id: str | None = None,
    display_name: str | None = None,
    now: str,
) -> str:
    row = store.conn.execute("SELECT id FROM workspaces WHERE path = ?", (path,)).fetchone()
    if row is not None:
        return str(row["id"])
    ws_id = workspace_id or workspace_id_for_path(path)
    if store.conn.execute("SELECT 1 FROM workspaces WHERE id = ?", (ws_id,)).fetchone():
        return ws_id
    name = display_name or PurePath(path).name or path
    store.conn.execute(
        "INSERT INTO workspaces(id, path, display_name, created_at) VALUES (?, ?, ?, ?)",
        (ws_id, path, name, now),
    )
    return ws_id


def list_workspaces(store: ChatStore) -> list[dict[str, Any]]:
    rows = store.conn.execute(
        """
        SELECT workspaces.id, workspaces.path, workspaces.display_name, workspaces.created_at,
               COUNT(conversations.id) AS conversations
        FROM workspaces
        LEFT JOIN conversations ON conversations.workspace_id = workspaces.id
        GROUP BY workspaces.id
        ORDER BY workspaces.display_name, workspaces.id
        """
    ).fetchall()
    return db.rows_to_dicts(rows)


def get_workspace(store: ChatStore, workspace_id: str) -> Workspace | None:
    row = store.conn.execute(
        "SELECT id, path, display_name FROM workspaces WHERE id = ?", (workspace_id,)
    ).fetchone()
    if row is None:
        return None
    return Workspace(id=row["id"], path=row["path"], display_name=row["display_name"])


def load_message_keys(
    store: ChatStore, conversation_ids: Sequence[str]
) -> dict[str, list[StoredMessageKey]]:
    keys: dict[str, list[StoredMessageKey]] = {}
    for chunk in _chunks(list(conversation_ids)):
        placeholders = ",".join("?" for _ in chunk)
        rows = store.conn.execute(
            f"""
            SELECT conversation_id, sequence, message_id, content_hash
            FROM messages
            WHERE conversation_id IN ({placeholders})
            ORDER BY conversation_id, sequence
            """,
            list(chunk),
        ).fetchall()
        for row in rows:
            keys.setdefault(row["conversation_id"], []).append(
                StoredMessageKey(
                    sequence=int(row["sequence"]),
                    message_id=row["message_id"],
                    content_hash=row["content_hash"],
                )
            )
    # Conversations that exist with zero messages still need an entry.
    for chunk in _chunks(list(conversation_ids)):
        placeholders = ",".join("?" for _ in chunk)
        rows = store.conn.execute(
            f"SELECT id FROM conversations WHERE id IN ({placeholders})", list(chunk)
        ).fetchall()
        for row in rows:
            keys.setdefault(row["id"], [])
    return keys


def _conversation_compressed(store: ChatStore, conversation_id: str) -> bool:
    row = store.conn.execute(
        "SELECT compressed FROM backup_records WHERE conversation_id = ?", (conversation_id,)
    ).fetchone()
    return bool(row["compressed"]) if row else False


def _insert_messages(
    store: ChatStore, conversation_id: str, messages: Iterable[Message], *, compress: bool
) -> None:
    for message in messages:
        blob, encoding = encode_content(message.content, compress=compress)
        store.conn.execute(
            """
            INSERT INTO messages(
                conversation_id, sequence, message_id, role, content, encoding,
                content_hash, created_at, metadata_json
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                conversation_id,
                message.sequence,
                message.message_id,
                message.role,
                blob,
                encoding,
                message.content_hash,
                message.created_at,
                db.to_json(message.metadata) if message.metadata else None,
            ),
        )


def insert_conversation(
    store: ChatStore, conversation: Conversation, *, workspace_id: str | None, now: str
) -> None:
    created_at = conversation.created_at
    if not created_at and conversation.messages:
        created_at = conversation.messages[0].created_at
    store.conn.execute(
        """
        INSERT INTO conversations(
            id, workspace_id, title, model_name, created_at, updated_at,
            message_count, metadata_json
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            conversation.id,
            workspace_id,
            conversation.title,
            conversation.model_name,
            created_at or now,
            now,
            conversation.message_count,
            db.to_json(conversation.metadata) if conversation.metadata else None,
        ),
    )
    _insert_messages(store, conversation.id, conversation.messages, compress=False)
    refresh_backup_record(store, conversation.id, now=now)


def append_messages(
    store: ChatStore, conversation: Conversation, messages: Sequence[Message], *, now: str
) -> None:
    compress = _conversation_compressed(store, conversation.id)
    _insert_messages(store, conversation.id, messages, compress=compress)
    _touch_conversation(store, conversation, now=now)
    refresh_backup_record(store, conversation.id, now=now)


def replace_messages(store: ChatStore, conversation: Conversation, *, now: str) -> None:
    store.conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation.id,))
    _insert_messages(store, conversation.id, conversation.messages, compress=False)
    _touch_conversation(store, conversation, now=now)
    refresh_backup_record(store, conversation.id, now=now)


def _touch_conversation(store: ChatStore, conversation: Conversation, *, now: str) -> None:
    row = store.conn.execute(
        "SELECT COUNT(*) AS n FROM messages WHERE conversation_id = ?", (conversation.id,)
    ).fetchone()
    store.conn.execute(
        """
        UPDATE conversations
        SET message_count = ?,
            updated_at = ?,
            title = CASE WHEN title = '' THEN ? ELSE title END,
            model_name = COALESCE(model_name, ?)
        WHERE id = ?
        """,
        (int(row["n"]), now, conversation.title, conversation.model_name, conversation.id),
    )


def assign_workspace(store: ChatStore, conversation_id: str, workspace_id: str) -> bool:
    cur = store.conn.execute(
        "UPDATE conversations SET workspace_id = ? WHERE id = ? AND workspace_id IS NULL",
        (workspace_id, conversation_id),
    )
    return cur.rowcount > 0


def refresh_backup_record(
    store: ChatStore, conversation_id: str, *, now: str
) -> None:
    row = store.conn.execute(
        """
        SELECT COUNT(*) AS n,
               COALESCE(SUM(LENGTH(content)), 0)
                 + COALESCE(SUM(LENGTH(CAST(COALESCE(metadata_json, '') AS BLOB))), 0) AS size,
               COALESCE(SUM(CASE WHEN encoding = 'gzip' THEN 1 ELSE 0 END), 0) AS gz
        FROM messages
        WHERE conversation_id = ?
        """,
        (conversation_id,),
    ).fetchone()
    count = int(row["n"])
    compressed = count > 0 and int(row["gz"]) == count
    store.conn.execute(
        """
        INSERT INTO backup_records(conversation_id, byte_size, compressed, last_backed_up_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(conversation_id) DO UPDATE SET
            byte_size = excluded.byte_size,
            compressed = excluded.compressed,
            last_backed_up_at = excluded.last_backed_up_at
        """,
        (conversation_id, int(row["size"]), 1 if compressed else 0, now),
    )


def link_source(
    store: ChatStore, location_key: str, conversation_id: str, message_count: int, *, now: str
) -> None:
    store.conn.execute(
        """
        INSERT INTO conversation_sources(
            location_key, conversation_id, message_count, first_seen_at
        )
        VALUES (?, ?, ?, ?)
        ON CONFLICT(location_key, conversation_id) DO UPDATE SET
            message_count = excluded.message_count
        WHERE conversation_sources.message_count != excluded.message_count
        """,
        (location_key, conversation_id, message_count, now),
    )


def get_conversation(store: ChatStore, conversation_id: str) -> Conversation | None:
    row = store.conn.execute(
        """
        SELECT conversations.*, workspaces.path AS workspace_path
        FROM conversations
        LEFT JOIN workspaces ON workspaces.id = conversations.workspace_id
        WHERE conversations.id = ?
        """,
        (conversation_id,),
    ).fetchone()
    if row is None:
        return None
    rows = store.conn.execute(
        """
        SELECT sequence, message_id, role, content, encoding, created_at, metadata_json
        FROM messages
        WHERE conversation_id = ?
        ORDER BY sequence
        """,
        (conversation_id,),
    ).fetchall()
    messages = [
        Message(
            sequence=int(r["sequence"]),
            role=r["role"],
            content=decode_content(r["content"], r["encoding"]),
            message_id=r["message_id"],
            created_at=r["created_at"],
            metadata=db.from_json(r["metadata_json"]),
        )
        for r in rows
    ]
    return Conversation(
        id=row["id"],
        messages=messages,
        workspace_id=row["workspace_id"],
        workspace_path=row["workspace_path"],
        title=row["title"],
        model_name=row["model_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        metadata=db.from_json(row["metadata_json"]),
    )


def list_conversations(
    store: ChatStore,
    *,
    workspace_id: str | None = None,
    limit: int = 20,
    min_messages: int = 1,
) -> list[dict[str, Any]]:
    """Most recently updated first."""
    clauses = ["conversations.message_count >= ?"]
    params: list[Any] = [min_messages]
    if workspace_id is not None:
        clauses.append("conversations.workspace_id = ?")
        params.append(workspace_id)
    params.append(limit)
    where = " AND ".join(clauses)
    rows = store.conn.execute(
        f"""
        SELECT conversations.id, conversations.title, conversations.workspace_id,
               workspaces.display_name AS workspace_name, conversations.message_count,
               conversations.created_at, conversations.updated_at
        FROM conversations
        LEFT JOIN workspaces ON workspaces.id = conversations.workspace_id
        WHERE {where}
        ORDER BY conversations.updated_at DESC, conversations.id
        LIMIT ?
        """,
        params,
    ).fetchall()
    return db.rows_to_dicts(rows)


def match_conversation_ids(store: ChatStore, prefix: str, *, limit: int = 5) -> list[str]:
    """An exact id wins; otherwise every id starting with ``prefix``."""
    if store.conn.execute("SELECT 1 FROM conversations WHERE id = ?", (prefix,)).fetchone():
        return [prefix]
    escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    rows = store.conn.execute(
        "SELECT id FROM conversations WHERE id LIKE ? ESCAPE '\\' ORDER BY id LIMIT ?",
        (f"{escaped}%", limit),
    ).fetchall()
    return [row["id"] for row in rows]


def conversation_ids_for_location(store: ChatStore, location_key: str) -> list[str]:
    rows = store.conn.execute(
        """
        SELECT conversation_id FROM conversation_sources
        WHERE location_key = ?
        ORDER BY conversation_id
        """,
        (location_key,),
    ).fetchall()
    return [row["conversation_id"] for row in rows]


def conversation_ids_for_workspace(store: ChatStore, workspace_id: str) -> list[str]:
    rows = store.conn.execute(
        "SELECT id FROM conversations WHERE workspace_id = ? ORDER BY id", (workspace_id,)
    ).fetchall()
    return [row["id"] for row in rows]


def linked_conversation_count(store: ChatStore, location_key: str) -> int:
    row = store.conn.execute(
        "SELECT COUNT(*) AS n FROM conversation_sources WHERE location_key = ?",
        (location_key,),
    ).fetchone()
    return int(row["n"])


def delete_conversation(
    store: ChatStore, conversation_id: str, *, reason: str, now: str
) -> int:
    row = store.conn.execute(
        """
        SELECT conversations.message_count, COALESCE(backup_records.byte_size, 0) AS byte_size
        FROM conversations
        LEFT JOIN backup_records ON backup_records.conversation_id = conversations.id
        WHERE conversations.id = ?
        """,
        (conversation_id,),
    ).fetchone()
    if row is None:
        return 0
    store.conn.execute(
        """
        INSERT OR REPLACE INTO tombstones(conversation_id, message_count, reason, pruned_at)
        VALUES (?, ?, ?, ?)
        """,
        (conversation_id, int(row["message_count"]), reason, now),
    )
    store.conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
    return int(row["byte_size"])


def get_tombstones(store: ChatStore, conversation_ids: Sequence[str]) -> dict[str, int]:
    found: dict[str, int] = {}
    for chunk in _chunks(list(conversation_ids)):
        placeholders = ",".join("?" for _ in chunk)
        rows = store.conn.execute(
            f"""
            SELECT conversation_id, message_count FROM tombstones
            WHERE conversation_id IN ({placeholders})
            """,
            list(chunk),
        ).fetchall()
        for row in rows:
            found[row["conversation_id"]] = int(row["message_count"])
    return found


def drop_tombstone(store: ChatStore, conversation_id: str) -> None:
    store.conn.execute("DELETE FROM tombstones WHERE conversation_id = ?", (conversation_id,))


def counts(store: ChatStore) -> dict[str, int]:
    row = store.conn.execute(
        """
        SELECT
            (SELECT COUNT(*) FROM conversations) AS conversations,
            (SELECT COUNT(*) FROM messages) AS messages,
            (SELECT COUNT(*) FROM workspaces) AS workspaces,
            (SELECT COUNT(*) FROM tombstones) AS tombstones
        """
    ).fetchone()
    return {key: int(row[key]) for key in row.keys()}
