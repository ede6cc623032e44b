from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Literal

Role = Literal["user", "assistant", "system"]
WipeState = Literal["normal", "suspect", "confirmed_wiped"]
LocationKind = Literal["global", "workspace"]

WIPE_NORMAL: WipeState = "normal"
WIPE_SUSPECT: WipeState = "suspect"
WIPE_CONFIRMED: WipeState = "confirmed_wiped"


def content_hash(role: str, content: str) -> str:
    return hashlib.sha256(f"{role}\x00{content}".encode()).hexdigest()


@dataclass
class Message:
    sequence: int
    role: Role
    content: str
    message_id: str
    created_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def content_hash(self) -> str:
        return content_hash(self.role, self.content)


@dataclass
class Conversation:
    id: str
    messages: list[Message] = field(default_factory=list)
    workspace_id: str | None = None
    workspace_path: str | None = None
    title: str = ""
    model_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def message_count(self) -> int:
        return len(self.messages)


@dataclass(frozen=True)
class Workspace:
    id: str
    path: str
    display_name: str


@dataclass(frozen=True)
class StoredMessageKey:
    sequence: int
    message_id: str
    content_hash: str


@dataclass
class SyncState:
    location_key: str
    path: str
    kind: LocationKind
    workspace_id: str | None = None
    last_seen_conversation_ids: set[str] = field(default_factory=set)
    last_seen_conversation_count: int = 0
    last_seen_total_messages: int = 0
    last_sync_at: str | None = None
    consecutive_empty_ticks: int = 0
    wipe_state: WipeState = WIPE_NORMAL
    wipe_state_changed_at: str | None = None
    ever_non_empty: bool = False
    last_error: str | None = None
    last_error_kind: str | None = None
    last_error_at: str | None = None
    corrupt_count: int = 0
    unavailable_count: int = 0
    skipped_records: int = 0


@dataclass(frozen=True)
class BackupRecord:
    conversation_id: str
    byte_size: int
    compressed: bool
    last_backed_up_at: str


@dataclass(frozen=True)
class RestoreRequest:
    id: int
    location_key: str
    selector: str
    reason: str
    status: str
    requested_at: str
