from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

from ..store.types import Conversation, Message
from . import parser

COMPOSER_VERSION = 10
BUBBLE_VERSION = 2


def _composer_document(
    conversation: Conversation, messages: list[tuple[str, Message]]
) -> dict[str, Any]:
    model_config: dict[str, Any] = {}
    if conversation.model_name:
        model_config["modelName"] = conversation.model_name
    if "max_mode" in conversation.metadata:
        model_config["maxMode"] = bool(conversation.metadata["max_mode"])
    doc: dict[str, Any] = {
        "_v": COMPOSER_VERSION,
        "composerId": conversation.id,
        "name": conversation.title,
        "createdAt": parser.to_millis(conversation.created_at),
        "lastUpdatedAt": parser.to_millis(conversation.updated_at),
        "fullConversationHeadersOnly": [
            {"bubbleId": bubble_id, "type": parser.TYPE_BY_ROLE.get(message.role, 0)}
            for bubble_id, message in messages
        ],
        "status": "completed",
        "context": {
            "fileSelections": [],
            "folderSelections": [],
            "selectedDocs": [],
            "selectedImages": [],
        },
    }
    if model_config:
        doc["modelConfig"] = model_config
    if isinstance(conversation.metadata.get("unified_mode"), str):
        doc["unifiedMode"] = conversation.metadata["unified_mode"]
    return doc


def _bubble_document(
    conversation: Conversation, bubble_id: str, message: Message
) -> dict[str, Any]:
    bubble_type = message.metadata.get("bubble_type")
    if not isinstance(bubble_type, int):
        bubble_type = parser.TYPE_BY_ROLE.get(message.role, 0)
    doc: dict[str, Any] = {
        "_v": BUBBLE_VERSION,
        "type": bubble_type,
        "bubbleId": bubble_id,
        "text": message.content,
    }
    if message.created_at:
        doc["createdAt"] = message.created_at
    tokens = message.metadata.get("token_count")
    if isinstance(tokens, dict):
        doc["tokenCount"] = dict(tokens)
    if isinstance(message.metadata.get("thinking"), str):
        thinking = {"text": message.metadata["thinking"]}
        if isinstance(message.metadata.get("thinking_signature"), str):
            thinking["signature"] = message.metadata["thinking_signature"]
        doc["thinking"] = thinking
    if isinstance(message.metadata.get("thinking_duration_ms"), int):
        doc["thinkingDurationMs"] = message.metadata["thinking_duration_ms"]
    if message.metadata.get("is_agentic"):
        doc["isAgentic"] = True
    if conversation.workspace_path:
        doc["workspaceProjectDir"] = conversation.workspace_path
    return doc


class SourceWriter:
    """Writes conversations back into a Cursor state database.

    Keys are the same ones the IDE uses, so rewriting a conversation replaces
    its rows instead of duplicating them.
    """

    def __init__(self, path: Path, *, timeout_s: float = 10.0):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path, timeout=timeout_s, isolation_level=None)
        self.conn.execute(
            "CREATE TABLE IF NOT EXISTS cursorDiskKV "
            "(key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)"
        )

    def __enter__(self) -> SourceWriter:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        self.conn.close()

    def write_conversation(self, conversation: Conversation) -> int:
        """Write one conversation in its own transaction; returns messages written."""
        messages: list[tuple[str, Message]] = []
        for message in sorted(conversation.messages, key=lambda m: m.sequence):
            bubble_id = message.message_id or parser.message_id_for(
                conversation.id, message.sequence
            )
            messages.append((bubble_id, message))
        rows = [
            (
                f"{parser.COMPOSER_PREFIX}{conversation.id}",
                json.dumps(_composer_document(conversation, messages), ensure_ascii=False),
            )
        ]
        for bubble_id, message in messages:
            rows.append(
                (
                    f"{parser.BUBBLE_PREFIX}{conversation.id}:{bubble_id}",
                    json.dumps(
                        _bubble_document(conversation, bubble_id, message), ensure_ascii=False
                    ),
                )
            )
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            self.conn.executemany(
                "INSERT OR REPLACE INTO cursorDiskKV(key, value) VALUES (?, ?)", rows
            )
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")
        return len(messages)
