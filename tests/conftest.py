from __future__ import annotations

import datetime as dt
import json
import sqlite3
from pathlib import Path
from typing import Any

import pytest

from chatkeeper.config import ChatKeeperConfig
from chatkeeper.source import SourceLocation
from chatkeeper.store import ChatStore

ENV_VARS = (
    "CHATKEEPER_SYNC_ENABLED",
    "CHATKEEPER_SYNC_INTERVAL_S",
    "CHATKEEPER_READ_TIMEOUT_S",
    "CHATKEEPER_AUTO_RESTORE",
    "CHATKEEPER_MAX_SIZE_GB",
    "CHATKEEPER_RETENTION_DAYS",
    "CHATKEEPER_COMPRESSION",
    "CHATKEEPER_SYNC_BIN",
)

BASE_TIME = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.UTC)


@pytest.fixture(autouse=True)
def _isolate_chatkeeper_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHATKEEPER_CONFIG", str(tmp_path / "config.json"))
    monkeypatch.setenv("CHATKEEPER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("CHATKEEPER_CURSOR_DIR", str(tmp_path / "cursor"))


class FakeClock:
    def __init__(self, start: dt.datetime = BASE_TIME):
        self.current = start

    def __call__(self) -> dt.datetime:
        return self.current

    def advance(self, **kwargs: float) -> dt.datetime:
        self.current += dt.timedelta(**kwargs)
        return self.current


class CursorDB:
    """A Cursor state database with the same key layout the IDE writes."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS cursorDiskKV "
                "(key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
            )
            conn.execute("CREATE TABLE IF NOT EXISTS ItemTable (key TEXT UNIQUE, value BLOB)")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.path)

    def put(self, key: str, value: Any) -> None:
        raw = value if isinstance(value, str | bytes) else json.dumps(value)
        with self._connect() as conn:
            conn.execute("INSERT INTO cursorDiskKV(key, value) VALUES (?, ?)", (key, raw))

    def add_conversation(
        self,
        conversation_id: str,
        message_count: int,
        *,
        name: str | None = None,
        texts: list[str] | None = None,
        workspace_dir: str | None = None,
    ) -> None:
        texts = texts or [f"{conversation_id} message {i}" for i in range(message_count)]
        headers = []
        for index, text in enumerate(texts):
            bubble_id = f"{conversation_id}-b{index}"
            bubble_type = 1 if index % 2 == 0 else 2
            headers.append({"bubbleId": bubble_id, "type": bubble_type})
            bubble: dict[str, Any] = {
                "_v": 2,
                "type": bubble_type,
                "bubbleId": bubble_id,
                "text": text,
                "createdAt": f"2026-02-01T10:{index:02d}:00+00:00",
            }
            if workspace_dir:
                bubble["workspaceProjectDir"] = workspace_dir
            self.put(f"bubbleId:{conversation_id}:{bubble_id}", bubble)
        composer: dict[str, Any] = {
            "_v": 10,
            "composerId": conversation_id,
            "createdAt": 1769940000000,
            "lastUpdatedAt": 1769943600000,
            "fullConversationHeadersOnly": headers,
        }
        if name:
            composer["name"] = name
        self.put(f"composerData:{conversation_id}", composer)

    def append_message(self, conversation_id: str, text: str, *, bubble_type: int = 1) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM cursorDiskKV WHERE key = ?",
                (f"composerData:{conversation_id}",),
            ).fetchone()
        composer = json.loads(row[0])
        index = len(composer["fullConversationHeadersOnly"])
        bubble_id = f"{conversation_id}-b{index}"
        composer["fullConversationHeadersOnly"].append({"bubbleId": bubble_id, "type": bubble_type})
        self.put(
            f"bubbleId:{conversation_id}:{bubble_id}",
            {"type": bubble_type, "bubbleId": bubble_id, "text": text},
        )
        self.put(f"composerData:{conversation_id}", composer)

    def set_text(self, conversation_id: str, index: int, text: str) -> None:
        bubble_id = f"{conversation_id}-b{index}"
        bubble_type = 1 if index % 2 == 0 else 2
        self.put(
            f"bubbleId:{conversation_id}:{bubble_id}",
            {"type": bubble_type, "bubbleId": bubble_id, "text": text},
        )

    def remove_conversation(self, conversation_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM cursorDiskKV WHERE key = ? OR key LIKE ?",
                (f"composerData:{conversation_id}", f"bubbleId:{conversation_id}:%"),
            )

    def truncate(self, conversation_id: str, keep: int) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT key FROM cursorDiskKV WHERE key LIKE ?",
                (f"bubbleId:{conversation_id}:%",),
            ).fetchall()
            for (key,) in rows:
                if int(key.rsplit("-b", 1)[1]) >= keep:
                    conn.execute("DELETE FROM cursorDiskKV WHERE key = ?", (key,))

    def wipe(self) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM cursorDiskKV")

    def set_workspace_composers(self, conversation_ids: list[str]) -> None:
        value = json.dumps({"allComposers": [{"composerId": cid} for cid in conversation_ids]})
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO ItemTable(key, value) VALUES (?, ?)",
                ("composer.composerData", value),
            )

    def keys(self) -> list[str]:
        with self._connect() as conn:
            return [row[0] for row in conn.execute("SELECT key FROM cursorDiskKV ORDER BY key")]

    def composer_count(self) -> int:
        return sum(1 for key in self.keys() if key.startswith("composerData:"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cursor_dir(tmp_path: Path) -> Path:
    return tmp_path / "cursor"


@pytest.fixture
def cursor_db(cursor_dir: Path) -> CursorDB:
    return CursorDB(cursor_dir / "User" / "globalStorage" / "state.vscdb")


@pytest.fixture
def global_location(cursor_db: CursorDB) -> SourceLocation:
    return SourceLocation(key="global", path=cursor_db.path, kind="global")


@pytest.fixture
def workspace_db(cursor_dir: Path) -> CursorDB:
    ws_dir = cursor_dir / "User" / "workspaceStorage" / "abc123"
    ws_dir.mkdir(parents=True, exist_ok=True)
    (ws_dir / "workspace.json").write_text(json.dumps({"folder": "file:///home/dev/project"}))
    return CursorDB(ws_dir / "state.vscdb")


@pytest.fixture
def store(tmp_path: Path):
    store = ChatStore(tmp_path / "data" / "storage.db")
    try:
        yield store
    finally:
        store.close()


@pytest.fixture
def config(tmp_path: Path, cursor_dir: Path) -> ChatKeeperConfig:
    return ChatKeeperConfig(
        data_dir=str(tmp_path / "data"),
        cursor_dir=str(cursor_dir),
        storage_compression=False,
    )


def table_dump(store: ChatStore) -> dict[str, list[tuple[Any, ...]]]:
    tables = ("workspaces", "conversations", "messages", "conversation_sources", "backup_records")
    return {
        table: [tuple(row) for row in store.conn.execute(f"SELECT * FROM {table} ORDER BY 1, 2")]
        for table in tables
    }


@pytest.fixture
def dump_tables():
    return table_dump


@pytest.fixture
def make_cursor_db():
    return CursorDB
