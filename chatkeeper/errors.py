"""Exceptions raised by the sync, restore and lifecycle engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .lifecycle import LifecycleReport
    from .restore import RestoreResult


class ChatKeeperError(Exception):
    """Base class for chatkeeper failures."""


class ConfigError(ChatKeeperError, ValueError):
    """Raised when the config document cannot be parsed."""


class SourceError(ChatKeeperError):
    kind = "error"

    def __init__(self, location_key: str, reason: str):
        self.location_key = location_key
        self.reason = reason
        super().__init__(f"{location_key}: {reason}")


class SourceUnavailable(SourceError):
    """Raised when a source location is missing, locked or timed out."""

    kind = "unavailable"


class SourceCorrupt(SourceError):
    """Raised when a source location holds data that cannot be read."""

    kind = "corrupt"


class AlreadyRunning(ChatKeeperError):
    def __init__(self, lock_path: str, pid: int | None = None):
        self.lock_path = lock_path
        self.pid = pid
        message = f"sync daemon already running (lock {lock_path}"
        if pid is not None:
            message += f", pid {pid}"
        super().__init__(message + ")")


class RestorePreconditionFailed(ChatKeeperError):
    def __init__(self, location_key: str, existing: int):
        self.location_key = location_key
        self.existing = existing
        super().__init__(
            f"{location_key} already holds {existing} conversation(s); use force to overwrite"
        )


class RestorePartialFailure(ChatKeeperError):
    def __init__(self, result: RestoreResult):
        self.result = result
        super().__init__(
            f"restored {len(result.succeeded)} conversation(s), {len(result.failed)} failed"
        )


class QuotaExceededAfterEnforcement(ChatKeeperError):
    def __init__(self, report: LifecycleReport):
        self.report = report
        super().__init__(
            f"storage still uses {report.total_bytes_after} bytes after enforcement "
            f"(quota {report.quota_bytes})"
        )
