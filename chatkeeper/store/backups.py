from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .. import db
from . import conversations as store_conversations
from .types import BackupRecord
from .utils import ENCODING_GZIP, decode_content, encode_content

if TYPE_CHECKING:
    from ._store import ChatStore


def get_backup_record(store: ChatStore, conversation_id: str) -> BackupRecord | None:
    row = store.conn.execute(
        "SELECT * FROM backup_records WHERE conversation_id = ?", (conversation_id,)
    ).fetchone()
    if row is None:
        return None
    return BackupRecord(
        conversation_id=row["conversation_id"],
        byte_size=int(row["byte_size"]),
        compressed=bool(row["compressed"]),
        last_backed_up_at=row["last_backed_up_at"],
    )


def total_backup_bytes(store: ChatStore) -> int:
    row = store.conn.execute(
        "SELECT COALESCE(SUM(byte_size), 0) AS total FROM backup_records"
    ).fetchone()
    return int(row["total"])


def lifecycle_candidates(store: ChatStore) -> list[dict[str, Any]]:
    """Conversations ordered oldest-updated first, with size and source links."""
    rows = store.conn.execute(
        """
        SELECT conversations.id, conversations.updated_at,
               COALESCE(backup_records.byte_size, 0) AS byte_size,
               COALESCE(backup_records.compressed, 0) AS compressed,
               (
                   SELECT group_concat(location_key, char(31))
                   FROM conversation_sources
                   WHERE conversation_sources.conversation_id = conversations.id
               ) AS locations
        FROM conversations
        LEFT JOIN backup_records ON backup_records.conversation_id = conversations.id
        ORDER BY conversations.updated_at ASC, conversations.id ASC
        """
    ).fetchall()
    items = db.rows_to_dicts(rows)
    for item in items:
        raw = item.pop("locations")
        item["locations"] = set(raw.split("\x1f")) if raw else set()
    return items


def compress_conversation(store: ChatStore, conversation_id: str, *, now: str) -> int:
    """Gzip every plain payload of a conversation; returns the new byte size."""
    rows = store.conn.execute(
        """
        SELECT sequence, content, encoding FROM messages
        WHERE conversation_id = ? AND encoding != ?
        """,
        (conversation_id, ENCODING_GZIP),
    ).fetchall()
    for row in rows:
        text = decode_content(row["content"], row["encoding"])
        blob, encoding = encode_content(text, compress=True)
        store.conn.execute(
            """
            UPDATE messages SET content = ?, encoding = ?
            WHERE conversation_id = ? AND sequence = ?
            """,
            (blob, encoding, conversation_id, row["sequence"]),
        )
    store_conversations.refresh_backup_record(store, conversation_id, now=now)
    record = get_backup_record(store, conversation_id)
    return record.byte_size if record else 0


def storage_totals(store: ChatStore) -> dict[str, int]:
    row = store.conn.execute(
        """
        SELECT COALESCE(SUM(byte_size), 0) AS total_bytes,
               COUNT(*) AS records,
               COALESCE(SUM(compressed), 0) AS compressed
        FROM backup_records
        """
    ).fetchone()
    return {key: int(row[key]) for key in row.keys()}
