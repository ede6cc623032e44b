from __future__ import annotations

from typing import TYPE_CHECKING

from .types import RestoreRequest

if TYPE_CHECKING:
    from ._store import ChatStore


def queue_restore_request(
    store: ChatStore, location_key: str, *, selector: str, reason: str, now: str
) -> int:
    with store.transaction():
        existing = store.conn.execute(
            """
            SELECT id FROM restore_requests
            WHERE location_key = ? AND selector = ? AND status = 'pending'
            """,
            (location_key, selector),
        ).fetchone()
        if existing is not None:
            return int(existing["id"])
        cur = store.conn.execute(
            """
            INSERT INTO restore_requests(location_key, selector, reason, status, requested_at)
            VALUES (?, ?, ?, 'pending', ?)
            """,
            (location_key, selector, reason, now),
        )
    lastrowid = cur.lastrowid
    if lastrowid is None:
        raise RuntimeError("Failed to queue restore request")
    return int(lastrowid)


def pending_restore_requests(store: ChatStore) -> list[RestoreRequest]:
    rows = store.conn.execute(
        """
        SELECT id, location_key, selector, reason, status, requested_at
        FROM restore_requests
        WHERE status = 'pending'
        ORDER BY id
        """
    ).fetchall()
    return [
        RestoreRequest(
            id=int(row["id"]),
            location_key=row["location_key"],
            selector=row["selector"],
            reason=row["reason"],
            status=row["status"],
            requested_at=row["requested_at"],
        )
        for row in rows
    ]


def finish_restore_request(
    store: ChatStore, request_id: int, *, status: str, detail: str | None, now: str
) -> None:
    with store.transaction():
        store.conn.execute(
            """
            UPDATE restore_requests SET status = ?, detail = ?, completed_at = ?
            WHERE id = ?
            """,
            (status, detail, now, request_id),
        )


def finish_pending_for_location(
    store: ChatStore, location_key: str, *, status: str, detail: str | None, now: str
) -> int:
    with store.transaction():
        cur = store.conn.execute(
            """
            UPDATE restore_requests SET status = ?, detail = ?, completed_at = ?
            WHERE location_key = ? AND status = 'pending'
            """,
            (status, detail, now, location_key),
        )
    return cur.rowcount
