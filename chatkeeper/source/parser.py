"""Parsing of Cursor ``cursorDiskKV`` records into conversations.

Conversation headers live under ``composerData:<conversation_id>`` and each
message (bubble) under ``bubbleId:<conversation_id>:<bubble_id>``; both values
are JSON documents.
"""

from __future__ import annotations

import datetime as dt
import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlparse

from ..store.types import Conversation, Message, Role
from ..store.utils import parse_iso8601

COMPOSER_PREFIX = "composerData:"
BUBBLE_PREFIX = "bubbleId:"
ROLE_BY_TYPE: dict[int, Role] = {1: "user", 2: "assistant"}
TYPE_BY_ROLE: dict[str, int] = {"user": 1, "assistant": 2, "system": 0}
TITLE_MAX_CHARS = 60
UNTITLED = "Untitled conversation"

_MESSAGE_NAMESPACE = uuid.UUID("6f1c9d6e-3c52-4f0b-9a43-1d8f3b0e7a21")


@dataclass
class ComposerHeader:
    conversation_id: str
    name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    model_name: str | None = None
    bubble_order: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ParsedBubble:
    bubble_id: str
    role: Role
    text: str
    created_at: str | None = None
    workspace_path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def _scrub(value: Any) -> Any:
    """Replace lone UTF-16 surrogates, which neither UTF-8 nor SQLite can store."""
    if isinstance(value, str):
        return value.encode("utf-8", "replace").decode("utf-8")
    if isinstance(value, list):
        return [_scrub(item) for item in value]
    if isinstance(value, dict):
        return {_scrub(key): _scrub(item) for key, item in value.items()}
    return value


def decode_value(raw: bytes | str | None) -> dict[str, Any]:
    if raw is None:
        raise ValueError("empty value")
    text = raw.decode("utf-8") if isinstance(raw, bytes | bytearray | memoryview) else raw
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("value is not an object")
    # A truncated emoji survives JSON as an escaped half surrogate pair.
    if "\\ud" in text or "\\uD" in text:
        data = _scrub(data)
    return data


def _from_millis(millis: int | float) -> str | None:
    try:
        return dt.datetime.fromtimestamp(millis / 1000, dt.UTC).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def parse_timestamp(value: Any) -> str | None:
    """Accept epoch milliseconds (int or numeric string) or ISO-8601 text.

    Out-of-range or non-finite epochs yield None.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return _from_millis(value)
    if isinstance(value, str):
        raw = value.strip()
        if raw.isascii() and raw.isdigit():
            return _from_millis(float(raw))
        parsed = parse_iso8601(raw)
        return parsed.isoformat() if parsed else None
    return None


def to_millis(value: str | None) -> int | None:
    if not value:
        return None
    parsed = parse_iso8601(value)
    if parsed is None:
        return None
    return int(parsed.timestamp() * 1000)


def parse_bubble_key(key: str) -> tuple[str, str] | None:
    if not key.startswith(BUBBLE_PREFIX):
        return None
    rest = key[len(BUBBLE_PREFIX) :]
    conversation_id, sep, bubble_id = rest.partition(":")
    if not sep or not conversation_id or not bubble_id:
        return None
    return conversation_id, bubble_id


def parse_composer_key(key: str) -> str | None:
    if not key.startswith(COMPOSER_PREFIX):
        return None
    conversation_id = key[len(COMPOSER_PREFIX) :]
    return conversation_id or None


def workspace_path_from_uri(uri: str) -> str | None:
    if not uri:
        return None
    if "://" not in uri:
        return uri
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return None
    path = unquote(parsed.path)
    return path or None


def parse_composer(conversation_id: str, data: dict[str, Any]) -> ComposerHeader:
    order: list[str] = []
    headers = data.get("fullConversationHeadersOnly")
    if isinstance(headers, list):
        for header in headers:
            if isinstance(header, dict) and isinstance(header.get("bubbleId"), str):
                order.append(header["bubbleId"])
    model_config = data.get("modelConfig")
    model_name = None
    metadata: dict[str, Any] = {}
    if isinstance(model_config, dict):
        if isinstance(model_config.get("modelName"), str):
            model_name = model_config["modelName"]
        if "maxMode" in model_config:
            metadata["max_mode"] = bool(model_config.get("maxMode"))
    if isinstance(data.get("unifiedMode"), str):
        metadata["unified_mode"] = data["unifiedMode"]
    name = data.get("name")
    return ComposerHeader(
        conversation_id=conversation_id,
        name=name.strip() if isinstance(name, str) and name.strip() else None,
        created_at=parse_timestamp(data.get("createdAt")),
        updated_at=parse_timestamp(data.get("lastUpdatedAt")),
        model_name=model_name,
        bubble_order=order,
        metadata=metadata,
    )


def parse_bubble(bubble_id: str, data: dict[str, Any]) -> ParsedBubble | None:
    """Returns None for bubbles without text (tool-only or placeholder rows)."""
    text = data.get("text")
    if not isinstance(text, str) or not text.strip():
        return None
    bubble_type = data.get("type")
    role: Role = "system"
    metadata: dict[str, Any] = {}
    if isinstance(bubble_type, int):
        role = ROLE_BY_TYPE.get(bubble_type, "system")
        if bubble_type not in ROLE_BY_TYPE:
            metadata["bubble_type"] = bubble_type
    tokens = data.get("tokenCount")
    if isinstance(tokens, dict):
        counts = {
            key: int(tokens[key])
            for key in ("inputTokens", "outputTokens")
            if isinstance(tokens.get(key), int) and tokens[key] > 0
        }
        if counts:
            metadata["token_count"] = counts
    thinking = data.get("thinking")
    if isinstance(thinking, dict) and isinstance(thinking.get("text"), str) and thinking["text"]:
        metadata["thinking"] = thinking["text"]
        if isinstance(thinking.get("signature"), str):
            metadata["thinking_signature"] = thinking["signature"]
    if isinstance(data.get("thinkingDurationMs"), int):
        metadata["thinking_duration_ms"] = data["thinkingDurationMs"]
    if data.get("isAgentic") is True:
        metadata["is_agentic"] = True

    workspace_path = None
    project_dir = data.get("workspaceProjectDir")
    if isinstance(project_dir, str) and project_dir.strip():
        workspace_path = project_dir.strip()
    else:
        uris = data.get("workspaceUris")
        if isinstance(uris, list) and uris and isinstance(uris[0], str):
            workspace_path = workspace_path_from_uri(uris[0])

    return ParsedBubble(
        bubble_id=bubble_id,
        role=role,
        text=text,
        created_at=parse_timestamp(data.get("createdAt")),
        workspace_path=workspace_path,
        metadata=metadata,
    )


def message_id_for(conversation_id: str, sequence: int) -> str:
    return str(uuid.uuid5(_MESSAGE_NAMESPACE, f"{conversation_id}:{sequence}"))


def derive_title(messages: list[Message]) -> str:
    for message in messages:
        if message.role != "user":
            continue
        first_line = next((line for line in message.content.splitlines() if line.strip()), "")
        text = re.sub(r"\s+", " ", first_line).strip()
        if not text:
            continue
        if len(text) <= TITLE_MAX_CHARS:
            return text
        cut = text[:TITLE_MAX_CHARS].rsplit(" ", 1)[0]
        return (cut or text[:TITLE_MAX_CHARS]).rstrip(" .,;:") + "..."
    return UNTITLED


def assemble_conversation(
    conversation_id: str,
    header: ComposerHeader | None,
    bubbles: list[ParsedBubble],
) -> Conversation | None:
    if not bubbles:
        return None
    order = header.bubble_order if header else []
    rank = {bubble_id: index for index, bubble_id in enumerate(order)}
    listed = sorted((b for b in bubbles if b.bubble_id in rank), key=lambda b: rank[b.bubble_id])
    unlisted = sorted(
        (b for b in bubbles if b.bubble_id not in rank),
        key=lambda b: (b.created_at or "", b.bubble_id),
    )
    messages = [
        Message(
            sequence=sequence,
            role=bubble.role,
            content=bubble.text,
            message_id=bubble.bubble_id,
            created_at=bubble.created_at,
            metadata=bubble.metadata,
        )
        for sequence, bubble in enumerate([*listed, *unlisted])
    ]
    workspace_path = next((b.workspace_path for b in bubbles if b.workspace_path), None)
    title = header.name if header and header.name else derive_title(messages)
    created_at = header.created_at if header and header.created_at else messages[0].created_at
    return Conversation(
        id=conversation_id,
        messages=messages,
        workspace_path=workspace_path,
        title=title,
        model_name=header.model_name if header else None,
        created_at=created_at,
        updated_at=header.updated_at if header else None,
        metadata=dict(header.metadata) if header else {},
    )
