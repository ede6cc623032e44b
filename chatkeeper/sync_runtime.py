from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath

from .locking import read_lock_pid


@dataclass(frozen=True)
class SyncRuntimeStatus:
    running: bool
    mechanism: str
    detail: str
    pid: int | None = None


@dataclass(frozen=True)
class StopPidfileResult:
    stopped: bool
    reason: str
    pid: int | None = None


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _pid_command_status(pid: int) -> tuple[str | None, str]:
    try:
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None, "ps_unavailable"
    if result.returncode != 0:
        return None, "command_unavailable"
    command = (result.stdout or "").strip()
    if not command:
        return None, "command_unavailable"
    return command, "ok"


def _normalized_binary_name(token: str) -> str:
    posix_name = Path(token).name
    windows_name = PureWindowsPath(token).name
    name = windows_name if len(windows_name) < len(posix_name) else posix_name
    return name.lower().removesuffix(".exe")


def _is_sync_daemon_command(command: str) -> bool:
    """True for ``chatkeeper sync daemon`` or ``python -m chatkeeper sync daemon``."""
    tokens = command.split()
    lowered = [token.lower() for token in tokens]
    allowed_binaries = {"chatkeeper"}
    configured = _normalized_binary_name(os.environ.get("CHATKEEPER_SYNC_BIN", ""))
    if configured:
        allowed_binaries.add(configured)
    for start in range(len(tokens)):
        binary = _normalized_binary_name(tokens[start])
        if binary in allowed_binaries and lowered[start + 1 : start + 3] == ["sync", "daemon"]:
            return True
        if (
            (binary == "py" or binary.startswith("python"))
            and lowered[start + 1 : start + 3] in (["-m", "chatkeeper"], ["-m", "chatkeeper.cli"])
            and lowered[start + 3 : start + 5] == ["sync", "daemon"]
        ):
            return True
    return False


def effective_status(lock_path: Path) -> SyncRuntimeStatus:
    pid = read_lock_pid(lock_path)
    if pid is None:
        return SyncRuntimeStatus(False, "lockfile", "not running")
    if not _pid_running(pid):
        return SyncRuntimeStatus(False, "lockfile", "stale lock (pid not running)", pid=pid)
    command, status = _pid_command_status(pid)
    if status == "ps_unavailable":
        return SyncRuntimeStatus(True, "lockfile", "running (unverified, ps unavailable)", pid=pid)
    if status == "ok" and command and _is_sync_daemon_command(command):
        return SyncRuntimeStatus(True, "lockfile", "running", pid=pid)
    # The lock is held by a live pid, which may be a foreground `sync daemon`
    # started through a wrapper we do not recognize.
    return SyncRuntimeStatus(True, "lockfile", "running (unverified command)", pid=pid)


def spawn_daemon(
    *,
    interval_s: int,
    log_path: Path,
    config_path: Path | None = None,
) -> int:
    binary = os.environ.get("CHATKEEPER_SYNC_BIN") or "chatkeeper"
    cmd = [binary, "sync", "daemon", "--interval-s", str(interval_s)]
    env = os.environ.copy()
    if config_path is not None:
        env["CHATKEEPER_CONFIG"] = str(config_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("ab") as log:
        proc = subprocess.Popen(
            cmd,
            stdout=log,
            stderr=log,
            start_new_session=True,
            env=env,
        )
    return int(proc.pid)


def wait_for_lock(lock_path: Path, pid: int, *, attempts: int = 30) -> bool:
    for _ in range(attempts):
        if read_lock_pid(lock_path) == pid:
            return True
        if not _pid_running(pid):
            return False
        time.sleep(0.1)
    return False


def stop_pidfile_with_reason(lock_path: Path) -> StopPidfileResult:
    pid = read_lock_pid(lock_path)
    if pid is None:
        return StopPidfileResult(False, "not_running")
    if not _pid_running(pid):
        return StopPidfileResult(False, "pid_not_running", pid=pid)
    command, status = _pid_command_status(pid)
    if status == "ps_unavailable":
        return StopPidfileResult(False, "ps_unavailable", pid=pid)
    if status != "ok" or not command or not _is_sync_daemon_command(command):
        return StopPidfileResult(False, "pid_unverified", pid=pid)
    try:
        os.kill(pid, signal.SIGTERM)
    except OSError:
        return StopPidfileResult(False, "signal_failed", pid=pid)
    for _ in range(30):
        time.sleep(0.1)
        if not _pid_running(pid):
            return StopPidfileResult(True, "stopped", pid=pid)
    return StopPidfileResult(False, "timeout", pid=pid)
