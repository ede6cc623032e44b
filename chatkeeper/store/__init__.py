from __future__ import annotations

from ._store import ChatStore
from .types import (
    WIPE_CONFIRMED,
    WIPE_NORMAL,
    WIPE_SUSPECT,
    BackupRecord,
    Conversation,
    Message,
    RestoreRequest,
    StoredMessageKey,
    SyncState,
    WipeState,
    Workspace,
)

__all__ = [
    "WIPE_CONFIRMED",
    "WIPE_NORMAL",
    "WIPE_SUSPECT",
    "BackupRecord",
    "ChatStore",
    "Conversation",
    "Message",
    "RestoreRequest",
    "StoredMessageKey",
    "SyncState",
    "WipeState",
    "Workspace",
]
