from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

from .errors import RestorePartialFailure, RestorePreconditionFailed, SourceError
from .source.reader import SourceLocation, SourceReader
from .source.writer import SourceWriter
from .store import ChatStore
from .wipe import SELECTOR_ALL, WipeDetector

logger = logging.getLogger(__name__)

SelectorKind = Literal["all", "conversation", "workspace"]
RestoreStatus = Literal["nothing_to_do", "ok", "partial", "failed"]


@dataclass(frozen=True)
class RestoreSelector:
    kind: SelectorKind
    value: str | None = None

    @classmethod
    def parse(cls, raw: str) -> RestoreSelector:
        text = raw.strip()
        if text == SELECTOR_ALL:
            return cls("all")
        kind, sep, value = text.partition(":")
        if sep and value and kind in ("conversation", "workspace"):
            return cls(kind, value)  # type: ignore[arg-type]
        raise ValueError(f"invalid restore selector: {raw!r}")

    def __str__(self) -> str:
        return self.kind if self.value is None else f"{self.kind}:{self.value}"


@dataclass
class RestoreResult:
    location_key: str
    selector: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    messages_written: int = 0

    @property
    def status(self) -> RestoreStatus:
        if not self.succeeded and not self.failed:
            return "nothing_to_do"
        if not self.failed:
            return "ok"
        if self.succeeded:
            return "partial"
        return "failed"


class RestoreEngine:
    """Writes stored conversations back into a source location."""

    def __init__(
        self,
        reader: SourceReader | None = None,
        *,
        clock: Callable[[], dt.datetime] | None = None,
    ):
        self.reader = reader or SourceReader()
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))

    def select(
        self, store: ChatStore, location: SourceLocation, selector: RestoreSelector
    ) -> list[str]:
        if selector.kind == "all":
            return store.conversation_ids_for_location(location.key)
        if selector.kind == "workspace":
            return store.conversation_ids_for_workspace(selector.value or "")
        return [selector.value] if selector.value else []

    def restore(
        self,
        store: ChatStore,
        location: SourceLocation,
        selector: RestoreSelector | str = SELECTOR_ALL,
        *,
        force: bool = False,
        detector: WipeDetector | None = None,
    ) -> RestoreResult:
        if isinstance(selector, str):
            selector = RestoreSelector.parse(selector)
        result = RestoreResult(location_key=location.key, selector=str(selector))
        conversation_ids = self.select(store, location, selector)
        if not conversation_ids:
            logger.info("%s: nothing to restore for %s", location.key, selector)
            return result

        existing = self.reader.count_conversations(location)
        if existing and not force:
            raise RestorePreconditionFailed(location.key, existing)

        with SourceWriter(location.path, timeout_s=self.reader.timeout_s) as writer:
            for conversation_id in conversation_ids:
                conversation = store.get_conversation(conversation_id)
                if conversation is None:
                    result.skipped.append(conversation_id)
                    continue
                try:
                    result.messages_written += writer.write_conversation(conversation)
                except sqlite3.Error as exc:
                    result.failed[conversation_id] = str(exc)
                    logger.warning(
                        "%s: failed to restore %s", location.key, conversation_id, exc_info=exc
                    )
                else:
                    result.succeeded.append(conversation_id)

        if selector.kind == "all" and result.succeeded:
            self._reset_wipe_state(store, location, detector)
        logger.info(
            "%s: restored %d conversation(s) (%d messages), %d failed",
            location.key,
            len(result.succeeded),
            result.messages_written,
            len(result.failed),
        )
        if result.failed:
            raise RestorePartialFailure(result)
        return result

    def _reset_wipe_state(
        self, store: ChatStore, location: SourceLocation, detector: WipeDetector | None
    ) -> None:
        detector = detector or WipeDetector(store, clock=self._clock)
        try:
            snapshot = self.reader.read(location)
        except SourceError as exc:
            logger.warning("%s: could not re-read after restore", location.key, exc_info=exc)
            return
        detector.mark_restored(location, snapshot)
