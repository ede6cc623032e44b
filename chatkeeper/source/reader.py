from __future__ import annotations

import datetime as dt
import logging
import math
import sqlite3
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import SourceCorrupt, SourceError, SourceUnavailable
from ..store.types import Conversation, LocationKind
from . import parser

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT_S = 30.0
PROGRESS_OPS = 10_000
# Extra time the outer guard allows on top of the in-query deadline.
TIMEOUT_GRACE_S = 2.0
QUEUE_POLL_S = 0.05


@dataclass(frozen=True)
class SourceLocation:
    key: str
    path: Path
    kind: LocationKind = "global"
    workspace_id: str | None = None
    workspace_path: str | None = None


@dataclass
class SourceSnapshot:
    location: SourceLocation
    conversations: list[Conversation]
    read_at: str
    skipped_records: int = 0
    # Conversation ids the IDE lists for a workspace, even when the messages
    # themselves live in the global store.
    workspace_members: set[str] = field(default_factory=set)

    @property
    def conversation_ids(self) -> set[str]:
        return {conversation.id for conversation in self.conversations}

    @property
    def conversation_count(self) -> int:
        return len(self.conversations)

    @property
    def total_messages(self) -> int:
        return sum(conversation.message_count for conversation in self.conversations)


@dataclass
class ReadOutcome:
    location: SourceLocation
    snapshot: SourceSnapshot | None = None
    error: SourceError | None = None


def _classify(location: SourceLocation, exc: sqlite3.Error) -> SourceError:
    message = str(exc).lower()
    if "interrupted" in message:
        return SourceUnavailable(location.key, "read timed out")
    if "locked" in message or "unable to open" in message or "busy" in message:
        return SourceUnavailable(location.key, str(exc))
    if isinstance(exc, sqlite3.OperationalError) and "no such table" not in message:
        return SourceUnavailable(location.key, str(exc))
    return SourceCorrupt(location.key, str(exc))


class SourceReader:
    """Read-only access to IDE state databases.

    Every read is bounded: a SQLite progress handler aborts queries past the
    deadline, and ``read_many`` also stops waiting on a worker that overruns.
    """

    def __init__(self, timeout_s: float = DEFAULT_READ_TIMEOUT_S):
        self.timeout_s = timeout_s

    def _open(self, location: SourceLocation, deadline: float) -> sqlite3.Connection:
        if not location.path.exists():
            raise SourceUnavailable(location.key, f"missing {location.path}")
        uri = f"{location.path.resolve().as_uri()}?mode=ro"
        try:
            conn = sqlite3.connect(
                uri, uri=True, timeout=min(self.timeout_s, 5.0), check_same_thread=False
            )
        except sqlite3.Error as exc:
            raise _classify(location, exc) from exc
        conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, PROGRESS_OPS)
        try:
            conn.execute("PRAGMA query_only = ON")
        except sqlite3.Error as exc:
            conn.close()
            raise _classify(location, exc) from exc
        return conn

    @staticmethod
    def _has_table(conn: sqlite3.Connection, name: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (name,)
        ).fetchone()
        return row is not None

    def read(self, location: SourceLocation) -> SourceSnapshot:
        deadline = time.monotonic() + self.timeout_s
        conn = self._open(location, deadline)
        try:
            try:
                snapshot = self._read_snapshot(conn, location)
            except sqlite3.Error as exc:
                raise _classify(location, exc) from exc
        finally:
            conn.close()
        if snapshot.skipped_records:
            logger.info(
                "skipped %d unreadable record(s) in %s", snapshot.skipped_records, location.key
            )
        return snapshot

    def _read_snapshot(self, conn: sqlite3.Connection, location: SourceLocation) -> SourceSnapshot:
        read_at = dt.datetime.now(dt.UTC).isoformat()
        members: set[str] = set()
        if location.kind == "workspace" and self._has_table(conn, "ItemTable"):
            members = self._workspace_members(conn, location)
        if not self._has_table(conn, "cursorDiskKV"):
            return SourceSnapshot(location, [], read_at, workspace_members=members)

        skipped = 0
        headers: dict[str, parser.ComposerHeader] = {}
        for key, value in conn.execute(
            "SELECT key, value FROM cursorDiskKV WHERE key LIKE ?",
            (f"{parser.COMPOSER_PREFIX}%",),
        ):
            conversation_id = parser.parse_composer_key(key)
            if conversation_id is None:
                continue
            try:
                headers[conversation_id] = parser.parse_composer(
                    conversation_id, parser.decode_value(value)
                )
            except (ValueError, RecursionError) as exc:
                skipped += 1
                logger.debug("skipping composer %s in %s: %s", key, location.key, exc)

        bubbles: dict[str, list[parser.ParsedBubble]] = {}
        for key, value in conn.execute(
            "SELECT key, value FROM cursorDiskKV WHERE key LIKE ?",
            (f"{parser.BUBBLE_PREFIX}%",),
        ):
            ids = parser.parse_bubble_key(key)
            if ids is None:
                continue
            conversation_id, bubble_id = ids
            try:
                bubble = parser.parse_bubble(bubble_id, parser.decode_value(value))
            except (ValueError, RecursionError) as exc:
                skipped += 1
                logger.debug("skipping bubble %s in %s: %s", key, location.key, exc)
                continue
            if bubble is not None:
                bubbles.setdefault(conversation_id, []).append(bubble)

        conversations: list[Conversation] = []
        for conversation_id in sorted(set(headers) | set(bubbles)):
            conversation = parser.assemble_conversation(
                conversation_id, headers.get(conversation_id), bubbles.get(conversation_id, [])
            )
            if conversation is None:
                continue
            if location.kind == "workspace":
                conversation.workspace_id = location.workspace_id
                conversation.workspace_path = location.workspace_path
            conversations.append(conversation)
        return SourceSnapshot(
            location,
            conversations,
            read_at,
            skipped_records=skipped,
            workspace_members=members,
        )

    @staticmethod
    def _workspace_members(conn: sqlite3.Connection, location: SourceLocation) -> set[str]:
        row = conn.execute(
            "SELECT value FROM ItemTable WHERE key = 'composer.composerData'"
        ).fetchone()
        if row is None:
            return set()
        try:
            data = parser.decode_value(row[0])
        except (ValueError, UnicodeDecodeError) as exc:
            logger.debug("skipping composer list in %s: %s", location.key, exc)
            return set()
        members: set[str] = set()
        for composer in data.get("allComposers") or []:
            if isinstance(composer, dict) and isinstance(composer.get("composerId"), str):
                members.add(composer["composerId"])
        return members

    def count_conversations(self, location: SourceLocation) -> int:
        """Conversation headers present at a location; a missing file counts as empty."""
        if not location.path.exists():
            return 0
        deadline = time.monotonic() + self.timeout_s
        conn = self._open(location, deadline)
        try:
            try:
                if not self._has_table(conn, "cursorDiskKV"):
                    return 0
                row = conn.execute(
                    "SELECT COUNT(*) FROM cursorDiskKV WHERE key LIKE ?",
                    (f"{parser.COMPOSER_PREFIX}%",),
                ).fetchone()
            except sqlite3.Error as exc:
                raise _classify(location, exc) from exc
        finally:
            conn.close()
        return int(row[0])

    def read_many(
        self, locations: Sequence[SourceLocation], *, max_workers: int = 4
    ) -> list[ReadOutcome]:
        """Read locations concurrently, one outcome per location in input order.

        Each read's guard starts when a worker picks it up, so time spent
        queued behind other reads never counts against it.
        """
        if not locations:
            return []
        workers = min(max_workers, len(locations))
        budget = self.timeout_s + TIMEOUT_GRACE_S
        # Bounds the wait for a queue slot when workers are stuck past their guard.
        queue_guard = time.monotonic() + budget * math.ceil(len(locations) / workers)
        started: dict[str, float] = {}

        def _timed_read(location: SourceLocation) -> SourceSnapshot:
            started[location.key] = time.monotonic()
            return self.read(location)

        outcomes: list[ReadOutcome] = []
        ex = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [(location, ex.submit(_timed_read, location)) for location in locations]
            for location, future in futures:
                try:
                    snapshot = self._await(
                        future,
                        lambda key=location.key: started.get(key),
                        budget=budget,
                        queue_guard=queue_guard,
                    )
                except FutureTimeout:
                    future.cancel()
                    timed_out = SourceUnavailable(location.key, "read timed out")
                    outcomes.append(ReadOutcome(location, error=timed_out))
                except SourceError as exc:
                    outcomes.append(ReadOutcome(location, error=exc))
                except OSError as exc:
                    outcomes.append(
                        ReadOutcome(location, error=SourceUnavailable(location.key, str(exc)))
                    )
                except Exception as exc:
                    logger.warning("unexpected failure reading %s", location.key, exc_info=exc)
                    detail = str(exc).strip() or type(exc).__name__
                    outcomes.append(
                        ReadOutcome(location, error=SourceCorrupt(location.key, detail))
                    )
                else:
                    outcomes.append(ReadOutcome(location, snapshot=snapshot))
        finally:
            # A worker stuck past its deadline is abandoned, not joined.
            ex.shutdown(wait=False, cancel_futures=True)
        return outcomes

    @staticmethod
    def _await(
        future: Future[SourceSnapshot],
        started_at: Callable[[], float | None],
        *,
        budget: float,
        queue_guard: float,
    ) -> SourceSnapshot:
        while True:
            begun = started_at()
            now = time.monotonic()
            if begun is None:
                if now >= queue_guard:
                    raise FutureTimeout()
                wait = min(QUEUE_POLL_S, queue_guard - now)
            else:
                wait = max(0.0, begun + budget - now)
            try:
                return future.result(timeout=wait)
            except FutureTimeout:
                if begun is not None:
                    raise
