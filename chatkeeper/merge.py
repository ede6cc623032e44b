"""Reconcile source snapshots into the canonical store.

History only grows: new conversations are inserted, longer source copies
append, and a shorter or rewritten source copy is flagged as diverged while
the stored history is kept.
"""

from __future__ import annotations

import contextlib
import datetime as dt
import logging
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field

from .source.reader import SourceSnapshot
from .store import ChatStore, Conversation, Message, StoredMessageKey

logger = logging.getLogger(__name__)


@dataclass
class MergeDiff:
    location_key: str
    new_conversations: list[Conversation] = field(default_factory=list)
    appended: dict[str, list[Message]] = field(default_factory=dict)
    # Divergent source copies longer than what is stored; they replace it.
    replaced: list[Conversation] = field(default_factory=list)
    diverged: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    tombstoned: list[str] = field(default_factory=list)
    resurrected: list[str] = field(default_factory=list)

    @property
    def appended_message_count(self) -> int:
        return sum(len(messages) for messages in self.appended.values())

    @property
    def has_changes(self) -> bool:
        return bool(self.new_conversations or self.appended or self.replaced)

    def summary(self) -> dict[str, int]:
        return {
            "new": len(self.new_conversations),
            "appended": len(self.appended),
            "appended_messages": self.appended_message_count,
            "replaced": len(self.replaced),
            "diverged": len(self.diverged),
            "unchanged": len(self.unchanged),
            "tombstoned": len(self.tombstoned),
        }


@dataclass
class MergeResult:
    diff: MergeDiff
    errors: dict[str, str] = field(default_factory=dict)
    workspaces_assigned: int = 0


def _matches(stored: StoredMessageKey, message: Message) -> bool:
    return stored.message_id == message.message_id and stored.content_hash == message.content_hash


def _common_prefix(stored: Sequence[StoredMessageKey], messages: Sequence[Message]) -> int:
    count = 0
    for stored_key, message in zip(stored, messages, strict=False):
        if not _matches(stored_key, message):
            break
        count += 1
    return count


def compute_diff(store: ChatStore, snapshot: SourceSnapshot) -> MergeDiff:
    diff = MergeDiff(location_key=snapshot.location.key)
    ids = [conversation.id for conversation in snapshot.conversations]
    stored = store.load_message_keys(ids)
    tombstones = store.get_tombstones([cid for cid in ids if cid not in stored])

    for conversation in snapshot.conversations:
        keys = stored.get(conversation.id)
        if keys is None:
            pruned_count = tombstones.get(conversation.id)
            if pruned_count is not None:
                if conversation.message_count <= pruned_count:
                    diff.tombstoned.append(conversation.id)
                    continue
                diff.resurrected.append(conversation.id)
            diff.new_conversations.append(conversation)
            continue

        stored_count = len(keys)
        source_count = conversation.message_count
        prefix = _common_prefix(keys, conversation.messages)
        if prefix == stored_count:
            if source_count > stored_count:
                # Stored sequences are contiguous from 0, so the tail is exactly
                # the messages past the max stored sequence.
                diff.appended[conversation.id] = conversation.messages[stored_count:]
            else:
                diff.unchanged.append(conversation.id)
            continue
        if prefix == source_count:
            diff.diverged.append(conversation.id)
            continue
        if source_count > stored_count:
            diff.replaced.append(conversation)
        else:
            diff.diverged.append(conversation.id)
    return diff


class MergeEngine:
    def __init__(self, clock: Callable[[], dt.datetime] | None = None):
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    def merge(self, store: ChatStore, snapshot: SourceSnapshot) -> MergeResult:
        diff = compute_diff(store, snapshot)
        return self.apply(store, snapshot, diff)

    def _workspace_for(
        self, store: ChatStore, snapshot: SourceSnapshot, conversation: Conversation, now: str
    ) -> str | None:
        location = snapshot.location
        if location.kind == "workspace" and location.workspace_id:
            return store.resolve_workspace(
                location.workspace_path or str(location.path.parent),
                workspace_id=location.workspace_id,
                now=now,
            )
        if conversation.workspace_path:
            return store.resolve_workspace(conversation.workspace_path, now=now)
        return None

    @contextlib.contextmanager
    def _isolated(
        self, store: ChatStore, result: MergeResult, conversation_id: str, action: str
    ) -> Iterator[None]:
        """One conversation per savepoint; a failure rolls back only that conversation."""
        try:
            with store.transaction():
                yield
        except (sqlite3.Error, ValueError) as exc:
            result.errors[conversation_id] = str(exc)
            logger.warning(
                "failed to %s %s from %s",
                action,
                conversation_id,
                result.diff.location_key,
                exc_info=exc,
            )

    def apply(self, store: ChatStore, snapshot: SourceSnapshot, diff: MergeDiff) -> MergeResult:
        result = MergeResult(diff=diff)
        now = self._clock().isoformat()
        key = snapshot.location.key
        by_id = {conversation.id: conversation for conversation in snapshot.conversations}

        with store.transaction():
            if snapshot.location.kind == "workspace" and snapshot.location.workspace_id:
                self._workspace_for(store, snapshot, Conversation(id=""), now)

            for conversation in diff.new_conversations:
                with self._isolated(store, result, conversation.id, "capture"):
                    if conversation.id in diff.resurrected:
                        store.drop_tombstone(conversation.id)
                    workspace_id = self._workspace_for(store, snapshot, conversation, now)
                    store.insert_conversation(conversation, workspace_id=workspace_id, now=now)
                    store.link_source(key, conversation.id, conversation.message_count, now=now)

            for conversation_id, messages in diff.appended.items():
                conversation = by_id[conversation_id]
                with self._isolated(store, result, conversation_id, "append to"):
                    store.append_messages(conversation, messages, now=now)
                    store.link_source(key, conversation_id, conversation.message_count, now=now)

            for conversation in diff.replaced:
                logger.info(
                    "%s: %s diverged with a longer copy (%d messages); keeping the longer one",
                    key,
                    conversation.id,
                    conversation.message_count,
                )
                with self._isolated(store, result, conversation.id, "replace"):
                    store.replace_messages(conversation, now=now)
                    store.link_source(key, conversation.id, conversation.message_count, now=now)

            for conversation_id in [*diff.unchanged, *diff.diverged]:
                conversation = by_id[conversation_id]
                with self._isolated(store, result, conversation_id, "update"):
                    store.link_source(key, conversation_id, conversation.message_count, now=now)
                    workspace_id = self._workspace_for(store, snapshot, conversation, now)
                    if workspace_id and store.assign_workspace(conversation_id, workspace_id):
                        result.workspaces_assigned += 1

            if snapshot.workspace_members and snapshot.location.workspace_id:
                result.workspaces_assigned += self._assign_members(store, snapshot, now)

        if diff.diverged:
            logger.info(
                "%s: %d conversation(s) shorter or rewritten in source", key, len(diff.diverged)
            )
        return result

    def _assign_members(self, store: ChatStore, snapshot: SourceSnapshot, now: str) -> int:
        workspace_id = self._workspace_for(store, snapshot, Conversation(id=""), now)
        if workspace_id is None:
            return 0
        assigned = 0
        for conversation_id in sorted(snapshot.workspace_members):
            if store.assign_workspace(conversation_id, workspace_id):
                assigned += 1
        return assigned
