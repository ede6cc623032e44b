"""Scheduled sync: read every source, merge, watch for wipes, restore, enforce storage."""

from __future__ import annotations

import datetime as dt
import logging
import os
import signal
import sqlite3
import threading
import traceback
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Literal

from .config import ChatKeeperConfig
from .errors import (
    QuotaExceededAfterEnforcement,
    RestorePartialFailure,
    RestorePreconditionFailed,
    SourceError,
)
from .lifecycle import LifecycleManager, LifecycleReport
from .locking import InstanceLock, TickLock, lock_is_held, read_lock_pid
from .merge import MergeEngine, MergeResult
from .restore import RestoreEngine, RestoreResult, RestoreSelector
from .source import SourceLocation, SourceReader, discover_locations
from .source.paths import cursor_config_dir, global_location
from .store import WIPE_CONFIRMED, ChatStore, SyncState
from .wipe import WipeDetector, WipeObservation

logger = logging.getLogger(__name__)

DaemonState = Literal["stopped", "starting", "running", "stopping"]
LocationProvider = Callable[[Iterable[SyncState]], list[SourceLocation]]


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass
class DaemonContext:
    """Process-wide state of one daemon run, handed to every component."""

    config: ChatKeeperConfig
    store: ChatStore
    reader: SourceReader
    pid: int = field(default_factory=os.getpid)
    state: DaemonState = "stopped"
    started_at: str | None = None
    clock: Callable[[], dt.datetime] = _utcnow
    locate: LocationProvider | None = None
    stop_event: threading.Event = field(default_factory=threading.Event)

    @classmethod
    def from_config(
        cls,
        config: ChatKeeperConfig,
        *,
        store: ChatStore | None = None,
        clock: Callable[[], dt.datetime] | None = None,
        locate: LocationProvider | None = None,
    ) -> DaemonContext:
        return cls(
            config=config,
            store=store or ChatStore(config.db_path),
            reader=SourceReader(timeout_s=config.sync_read_timeout_s),
            clock=clock or _utcnow,
            locate=locate,
        )

    def now(self) -> str:
        return self.clock().isoformat()

    def locations(self) -> list[SourceLocation]:
        known = self.store.list_sync_states()
        if self.locate is not None:
            return self.locate(known)
        return discover_locations(self.config.cursor_dir, known)

    def location_for(self, location_key: str) -> SourceLocation:
        for location in self.locations():
            if location.key == location_key:
                return location
        state = self.store.get_sync_state(location_key)
        if state is not None:
            return SourceLocation(
                key=state.location_key,
                path=Path(state.path),
                kind=state.kind,
                workspace_id=state.workspace_id,
            )
        raise KeyError(location_key)

    def default_location(self) -> SourceLocation:
        return global_location(cursor_config_dir(self.config.cursor_dir))


@dataclass
class SourceTickResult:
    location_key: str
    merge: MergeResult | None = None
    observation: WipeObservation | None = None
    error: str | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"location": self.location_key}
        if self.merge is not None:
            data["merge"] = self.merge.diff.summary()
            if self.merge.errors:
                data["merge_errors"] = dict(self.merge.errors)
        if self.observation is not None:
            data["wipe_state"] = self.observation.state
        if self.error is not None:
            data["error"] = self.error
            data["error_kind"] = self.error_kind
        return data


@dataclass
class TickReport:
    started_at: str
    sources: list[SourceTickResult] = field(default_factory=list)
    restores: list[RestoreResult] = field(default_factory=list)
    restore_errors: dict[int, str] = field(default_factory=dict)
    lifecycle: LifecycleReport | None = None
    lifecycle_error: str | None = None
    error: str | None = None
    traceback: str | None = None

    @property
    def source_errors(self) -> dict[str, str]:
        errors: dict[str, str] = {}
        for source in self.sources:
            if source.error is not None:
                errors[source.location_key] = source.error
            elif source.merge is not None and source.merge.errors:
                errors[source.location_key] = f"{len(source.merge.errors)} conversation(s) failed"
        return errors

    @property
    def status(self) -> str:
        if self.error is not None:
            return "error"
        if self.source_errors or self.restore_errors or self.lifecycle_error:
            return "partial"
        return "ok"

    def error_summary(self) -> str | None:
        if self.error is not None:
            return self.error
        parts = [f"{key}: {message}" for key, message in sorted(self.source_errors.items())]
        parts.extend(f"restore #{rid}: {message}" for rid, message in self.restore_errors.items())
        if self.lifecycle_error:
            parts.append(self.lifecycle_error)
        return "; ".join(parts) or None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at,
            "status": self.status,
            "sources": [source.to_dict() for source in self.sources],
            "restores": [
                {
                    "location": result.location_key,
                    "selector": result.selector,
                    "status": result.status,
                    "succeeded": len(result.succeeded),
                    "failed": dict(result.failed),
                }
                for result in self.restores
            ],
            "lifecycle": self.lifecycle.to_dict() if self.lifecycle else None,
            "error": self.error_summary(),
        }


@dataclass
class DaemonStatus:
    running: bool
    pid: int | None
    heartbeat: dict[str, Any] | None
    sources: list[dict[str, Any]]
    counts: dict[str, int]
    pending_restores: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def append_daemon_log(log_path: Path, message: str) -> None:
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        ts = _utcnow().isoformat()
        with log_path.open("a", encoding="utf-8", errors="ignore") as handle:
            handle.write(f"\n[{ts}]\n{message}\n")
    except OSError as exc:
        logger.warning("could not append to %s", log_path, exc_info=exc)


def daemon_status(config: ChatKeeperConfig, store: ChatStore) -> DaemonStatus:
    pid = read_lock_pid(config.lock_path)
    running = lock_is_held(config.lock_path)
    sources = []
    for state in store.list_sync_states():
        item = asdict(state)
        item["last_seen_conversation_ids"] = len(state.last_seen_conversation_ids)
        sources.append(item)
    return DaemonStatus(
        running=running,
        pid=pid if running else None,
        heartbeat=store.get_heartbeat(),
        sources=sources,
        counts=store.counts(),
        pending_restores=len(store.pending_restore_requests()),
    )


class SyncDaemon:
    def __init__(self, context: DaemonContext):
        self.context = context
        config = context.config
        self.merger = MergeEngine(clock=context.clock)
        self.detector = WipeDetector(
            context.store,
            threshold=config.sync_wipe_threshold,
            confirm_ticks=config.sync_wipe_confirm_ticks,
            auto_restore=config.sync_auto_restore,
            clock=context.clock,
        )
        self.restorer = RestoreEngine(context.reader, clock=context.clock)
        self.lifecycle = LifecycleManager(clock=context.clock)
        self._tick_mutex = threading.Lock()
        self._instance_lock = InstanceLock(config.lock_path)

    @property
    def store(self) -> ChatStore:
        return self.context.store

    # Lifecycle

    def start(self) -> None:
        self._instance_lock.acquire()
        self.context.state = "starting"
        self.context.pid = os.getpid()
        self.context.started_at = self.context.now()
        self.context.stop_event.clear()
        self.store.set_heartbeat_state("starting", pid=self.context.pid)
        self.context.state = "running"
        self.store.set_heartbeat_state("running", pid=self.context.pid)
        logger.info(
            "sync daemon started (pid %d, every %ds)",
            self.context.pid,
            self.context.config.sync_interval_s,
        )

    def stop(self) -> None:
        self.context.stop_event.set()

    def shutdown(self) -> None:
        if not self._instance_lock.held:
            return
        self.context.state = "stopping"
        self.store.set_heartbeat_state("stopping")
        try:
            self._instance_lock.release()
        finally:
            self.context.state = "stopped"
            self.store.set_heartbeat_state("stopped")
            logger.info("sync daemon stopped")

    def install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return

        def _handle(signum: int, _frame: object) -> None:
            logger.info("received signal %d, stopping after the current tick", signum)
            self.stop()

        signal.signal(signal.SIGTERM, _handle)
        signal.signal(signal.SIGINT, _handle)

    def run_forever(self) -> None:
        self.start()
        stop = self.context.stop_event
        try:
            self.run_tick()
            while not stop.wait(self.context.config.sync_interval_s):
                self.run_tick()
        finally:
            self.shutdown()

    # Ticks

    def force_tick(self) -> TickReport:
        return self.run_tick()

    def run_tick(self) -> TickReport:
        with self._tick_mutex, TickLock(self.context.config.tick_lock_path):
            report = TickReport(started_at=self.context.now())
            try:
                self._run_pending_restores(report)
                self._sync_sources(report)
                self._enforce_lifecycle(report)
            except Exception as exc:
                report.error = str(exc) or type(exc).__name__
                report.traceback = traceback.format_exc()
                logger.error("sync tick failed", exc_info=exc)
                append_daemon_log(self.context.config.log_path, report.traceback)
            finally:
                self.store.record_tick(
                    status=report.status,
                    error=report.error_summary(),
                    traceback_text=report.traceback,
                )
        return report

    def _sync_sources(self, report: TickReport) -> None:
        locations = self.context.locations()
        for outcome in self.context.reader.read_many(locations):
            location = outcome.location
            result = SourceTickResult(location.key)
            report.sources.append(result)
            if outcome.error is not None:
                result.error = outcome.error.reason
                result.error_kind = outcome.error.kind
                logger.warning("source read failed: %s", outcome.error)
                self.store.record_source_error(
                    location,
                    kind=outcome.error.kind,
                    message=outcome.error.reason,
                    now=self.context.now(),
                )
                continue
            snapshot = outcome.snapshot
            if snapshot is None:
                continue
            try:
                result.merge = self.merger.merge(self.store, snapshot)
                result.observation = self.detector.observe(snapshot)
            except Exception as exc:
                result.error = str(exc).strip() or type(exc).__name__
                result.error_kind = "store"
                logger.warning("%s: merge failed", location.key, exc_info=exc)
                self.store.record_source_error(
                    location, kind="store", message=result.error, now=self.context.now()
                )

    def _run_pending_restores(self, report: TickReport) -> None:
        for request in self.store.pending_restore_requests():
            now = self.context.now()
            state = self.store.get_sync_state(request.location_key)
            if state is None or state.wipe_state != WIPE_CONFIRMED:
                self.store.finish_restore_request(
                    request.id, status="superseded", detail="source no longer wiped", now=now
                )
                continue
            location = self.context.location_for(request.location_key)
            try:
                result = self.restorer.restore(
                    self.store, location, request.selector, detector=self.detector
                )
            except RestorePreconditionFailed as exc:
                report.restore_errors[request.id] = str(exc)
                logger.warning("restore #%d skipped: %s", request.id, exc)
                self.store.finish_restore_request(
                    request.id, status="failed", detail=str(exc), now=now
                )
            except RestorePartialFailure as exc:
                report.restores.append(exc.result)
                report.restore_errors[request.id] = str(exc)
                self.store.finish_restore_request(
                    request.id, status="failed", detail=f"{exc.result.status}: {exc}", now=now
                )
            except (SourceError, OSError, sqlite3.Error) as exc:
                report.restore_errors[request.id] = str(exc)
                logger.warning("restore #%d failed", request.id, exc_info=exc)
                self.store.finish_restore_request(
                    request.id, status="failed", detail=str(exc), now=now
                )
            else:
                report.restores.append(result)
                self.store.finish_restore_request(
                    request.id, status="done", detail=result.status, now=now
                )

    def _enforce_lifecycle(self, report: TickReport) -> None:
        config = self.context.config
        try:
            report.lifecycle = self.lifecycle.enforce(
                self.store,
                quota_bytes=config.quota_bytes,
                retention_days=config.storage_retention_days,
                compression=config.storage_compression,
            )
        except QuotaExceededAfterEnforcement as exc:
            report.lifecycle = exc.report
            report.lifecycle_error = str(exc)
            logger.warning("%s", exc)

    # Caller-invoked operations, serialized with ticks

    def restore(
        self,
        location: SourceLocation,
        selector: RestoreSelector | str,
        *,
        force: bool = False,
    ) -> RestoreResult:
        with self._tick_mutex, TickLock(self.context.config.tick_lock_path):
            return self.restorer.restore(
                self.store, location, selector, force=force, detector=self.detector
            )

    def reset(self, location: SourceLocation) -> int:
        return self.detector.force_wiped(location, reason="reset")

    def acknowledge(self, location_key: str) -> SyncState | None:
        return self.detector.acknowledge(location_key)

    def status(self) -> DaemonStatus:
        return daemon_status(self.context.config, self.store)
