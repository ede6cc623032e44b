"""Retention, quota and compression for the canonical store."""

from __future__ import annotations

import datetime as dt
import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import ChatKeeperConfig
from .errors import QuotaExceededAfterEnforcement
from .store import WIPE_NORMAL, ChatStore
from .store.utils import parse_iso8601

logger = logging.getLogger(__name__)

RECENCY_FLOOR = dt.timedelta(hours=24)


@dataclass
class LifecycleReport:
    quota_bytes: int
    total_bytes_before: int = 0
    total_bytes_after: int = 0
    freed_bytes: int = 0
    pruned_ids: list[str] = field(default_factory=list)
    evicted_ids: list[str] = field(default_factory=list)
    compressed_ids: list[str] = field(default_factory=list)
    # Kept because removing them would erase the last evidence of a source.
    protected_ids: list[str] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.pruned_ids) + len(self.evicted_ids)

    @property
    def within_quota(self) -> bool:
        return self.total_bytes_after <= self.quota_bytes

    def to_dict(self) -> dict[str, Any]:
        return {
            "quota_bytes": self.quota_bytes,
            "total_bytes_before": self.total_bytes_before,
            "total_bytes_after": self.total_bytes_after,
            "freed_bytes": self.freed_bytes,
            "pruned": len(self.pruned_ids),
            "evicted": len(self.evicted_ids),
            "compressed": len(self.compressed_ids),
            "protected": len(self.protected_ids),
        }


class LifecycleManager:
    def __init__(
        self,
        *,
        clock: Callable[[], dt.datetime] | None = None,
        recency_floor: dt.timedelta = RECENCY_FLOOR,
    ):
        self._clock = clock or (lambda: dt.datetime.now(dt.UTC))
        self.recency_floor = recency_floor

    def enforce(
        self,
        store: ChatStore,
        *,
        quota_bytes: int,
        retention_days: int,
        compression: bool = False,
    ) -> LifecycleReport:
        now_dt = self._clock()
        now = now_dt.isoformat()
        floor = now_dt - self.recency_floor
        report = LifecycleReport(quota_bytes=quota_bytes)
        report.total_bytes_before = store.total_backup_bytes()
        total = report.total_bytes_before

        candidates = store.lifecycle_candidates()
        historical = set(store.historical_sources())
        remaining_links: Counter[str] = Counter()
        for item in candidates:
            remaining_links.update(item["locations"] & historical)
        normal_seen: set[str] = set()
        for state in store.list_sync_states():
            if state.wipe_state == WIPE_NORMAL:
                normal_seen |= state.last_seen_conversation_ids

        def last_evidence(item: dict[str, Any]) -> bool:
            return any(remaining_links[key] <= 1 for key in item["locations"] & historical)

        def remove(item: dict[str, Any], reason: str) -> int:
            with store.transaction():
                freed = store.delete_conversation(item["id"], reason=reason, now=now)
            remaining_links.subtract(item["locations"] & historical)
            return freed

        kept: list[dict[str, Any]] = []
        if retention_days > 0:
            cutoff = now_dt - dt.timedelta(days=retention_days)
            for item in candidates:
                updated = parse_iso8601(item["updated_at"] or "")
                expired = updated is not None and updated < cutoff
                if not expired or item["id"] not in normal_seen:
                    kept.append(item)
                    continue
                if last_evidence(item):
                    report.protected_ids.append(item["id"])
                    kept.append(item)
                    continue
                freed = remove(item, "retention")
                total -= freed
                report.freed_bytes += freed
                report.pruned_ids.append(item["id"])
        else:
            kept = list(candidates)

        def outside_floor(item: dict[str, Any]) -> bool:
            updated = parse_iso8601(item["updated_at"] or "")
            return updated is None or updated < floor

        if compression:
            for item in kept:
                if item["compressed"] or not outside_floor(item):
                    continue
                with store.transaction():
                    new_size = store.compress_conversation(item["id"], now=now)
                saved = int(item["byte_size"]) - new_size
                total -= saved
                report.freed_bytes += max(saved, 0)
                item["byte_size"] = new_size
                report.compressed_ids.append(item["id"])

        if total > quota_bytes:
            for item in kept:
                if total <= quota_bytes:
                    break
                if not outside_floor(item):
                    continue
                if last_evidence(item):
                    if item["id"] not in report.protected_ids:
                        report.protected_ids.append(item["id"])
                    continue
                freed = remove(item, "quota")
                total -= freed
                report.freed_bytes += freed
                report.evicted_ids.append(item["id"])

        report.total_bytes_after = store.total_backup_bytes()
        if report.removed_count or report.compressed_ids:
            logger.info(
                "lifecycle: pruned %d, evicted %d, compressed %d, freed %d bytes",
                len(report.pruned_ids),
                len(report.evicted_ids),
                len(report.compressed_ids),
                report.freed_bytes,
            )
        if not report.within_quota:
            raise QuotaExceededAfterEnforcement(report)
        return report


def storage_stats(store: ChatStore, config: ChatKeeperConfig) -> dict[str, Any]:
    stats = store.stats()
    backup = stats["backup"]
    quota = config.quota_bytes
    total = int(backup["total_bytes"])
    return {
        "total_bytes": total,
        "quota_bytes": quota,
        "usage_percent": round(100.0 * total / quota, 2) if quota else 0.0,
        "retention_days": config.storage_retention_days,
        "compression": config.storage_compression,
        "conversations": stats["database"]["conversations"],
        "messages": stats["database"]["messages"],
        "workspaces": stats["database"]["workspaces"],
        "tombstones": stats["database"]["tombstones"],
        "compressed_conversations": int(backup["compressed"]),
        "database_path": stats["database"]["path"],
        "database_bytes": stats["database"]["size_bytes"],
    }
