from __future__ import annotations

import os
import signal
import subprocess
import sys
from pathlib import Path

import pytest

from chatkeeper import sync_runtime


def _lock_file(tmp_path: Path, pid: int) -> Path:
    lock_path = tmp_path / "sync.lock"
    lock_path.write_text(f"{pid}\n")
    return lock_path


def test_stop_does_not_kill_unrelated_process(monkeypatch, tmp_path: Path) -> None:
    lock_path = _lock_file(tmp_path, 123)
    monkeypatch.setattr(sync_runtime, "_pid_running", lambda pid: True)
    monkeypatch.setattr(
        sync_runtime, "_pid_command_status", lambda pid: ("python -m http.server", "ok")
    )

    def _unexpected_kill(pid: int, sig: int) -> None:
        raise AssertionError("stop should not signal unrelated processes")

    monkeypatch.setattr(sync_runtime.os, "kill", _unexpected_kill)

    result = sync_runtime.stop_pidfile_with_reason(lock_path)

    assert result.stopped is False
    assert result.reason == "pid_unverified"
    assert result.pid == 123
    assert lock_path.exists()


def test_stop_kills_verified_sync_daemon(monkeypatch, tmp_path: Path) -> None:
    lock_path = _lock_file(tmp_path, 456)
    monkeypatch.setattr(
        sync_runtime, "_pid_command_status", lambda pid: ("chatkeeper sync daemon", "ok")
    )
    checks = iter([True, False])
    monkeypatch.setattr(sync_runtime, "_pid_running", lambda pid: next(checks, False))
    monkeypatch.setattr(sync_runtime.time, "sleep", lambda _n: None)
    sent: list[tuple[int, int]] = []
    monkeypatch.setattr(sync_runtime.os, "kill", lambda pid, sig: sent.append((pid, sig)))

    result = sync_runtime.stop_pidfile_with_reason(lock_path)

    assert result.stopped is True
    assert result.reason == "stopped"
    assert result.pid == 456
    assert sent == [(456, signal.SIGTERM)]


def test_stop_reports_ps_unavailable(monkeypatch, tmp_path: Path) -> None:
    lock_path = _lock_file(tmp_path, 654)
    monkeypatch.setattr(sync_runtime, "_pid_running", lambda pid: True)
    monkeypatch.setattr(sync_runtime, "_pid_command_status", lambda pid: (None, "ps_unavailable"))
    monkeypatch.setattr(
        sync_runtime.os,
        "kill",
        lambda pid, sig: (_ for _ in ()).throw(AssertionError("should not signal unverified pid")),
    )

    result = sync_runtime.stop_pidfile_with_reason(lock_path)

    assert result.stopped is False
    assert result.reason == "ps_unavailable"
    assert result.pid == 654


def test_stop_without_lock_is_not_running(tmp_path: Path) -> None:
    result = sync_runtime.stop_pidfile_with_reason(tmp_path / "missing.lock")

    assert result == sync_runtime.StopPidfileResult(False, "not_running")


def test_stop_stale_lock(monkeypatch, tmp_path: Path) -> None:
    lock_path = _lock_file(tmp_path, 98765)
    monkeypatch.setattr(sync_runtime, "_pid_running", lambda pid: False)

    result = sync_runtime.stop_pidfile_with_reason(lock_path)

    assert result.reason == "pid_not_running"
    assert result.pid == 98765


@pytest.mark.parametrize(
    ("alive", "command_status", "running", "detail"),
    [
        (False, ("chatkeeper sync daemon", "ok"), False, "stale lock (pid not running)"),
        (True, ("chatkeeper sync daemon --interval-s 60", "ok"), True, "running"),
        (True, (None, "ps_unavailable"), True, "running (unverified, ps unavailable)"),
        (True, ("python -m http.server", "ok"), True, "running (unverified command)"),
    ],
)
def test_effective_status(
    monkeypatch, tmp_path: Path, alive, command_status, running, detail
) -> None:
    lock_path = _lock_file(tmp_path, 321)
    monkeypatch.setattr(sync_runtime, "_pid_running", lambda pid: alive)
    monkeypatch.setattr(sync_runtime, "_pid_command_status", lambda pid: command_status)

    status = sync_runtime.effective_status(lock_path)

    assert status.running is running
    assert status.mechanism == "lockfile"
    assert status.detail == detail
    assert status.pid == 321


def test_effective_status_without_lock(tmp_path: Path) -> None:
    status = sync_runtime.effective_status(tmp_path / "sync.lock")

    assert status.running is False
    assert status.detail == "not running"
    assert status.pid is None


def test_pid_command_missing_ps(monkeypatch) -> None:
    def _missing_ps(*_args, **_kwargs):
        raise FileNotFoundError

    monkeypatch.setattr(sync_runtime.subprocess, "run", _missing_ps)

    assert sync_runtime._pid_command_status(123) == (None, "ps_unavailable")


def test_is_sync_daemon_command_accepts_direct_and_wrapped_invocations() -> None:
    assert sync_runtime._is_sync_daemon_command("chatkeeper sync daemon")
    assert sync_runtime._is_sync_daemon_command("/opt/bin/chatkeeper sync daemon --interval-s 120")
    assert sync_runtime._is_sync_daemon_command(
        "uv run --directory /repo chatkeeper sync daemon --interval-s 60"
    )
    assert sync_runtime._is_sync_daemon_command("python -m chatkeeper sync daemon")
    assert sync_runtime._is_sync_daemon_command("python3.12 -m chatkeeper.cli sync daemon")


def test_is_sync_daemon_command_accepts_windows_and_configured_binary(monkeypatch) -> None:
    assert sync_runtime._is_sync_daemon_command(r"C:\\Tools\\chatkeeper.exe sync daemon")
    monkeypatch.setenv("CHATKEEPER_SYNC_BIN", "/custom/bin/chatkeeper-local")
    assert sync_runtime._is_sync_daemon_command(
        "/custom/bin/chatkeeper-local sync daemon --interval-s 90"
    )


def test_is_sync_daemon_command_rejects_non_daemon_or_broad_matches() -> None:
    assert not sync_runtime._is_sync_daemon_command("chatkeeper sync status")
    assert not sync_runtime._is_sync_daemon_command("python -m chatkeeper sync now")
    assert not sync_runtime._is_sync_daemon_command("sync-and-daemon-helper --sync --daemon")
    assert not sync_runtime._is_sync_daemon_command("echo sync daemon")
    assert not sync_runtime._is_sync_daemon_command("bash -lc 'echo chatkeeper sync daemon'")


def test_wait_for_lock_gives_up_when_child_exits(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(sync_runtime, "_pid_running", lambda pid: False)

    assert sync_runtime.wait_for_lock(tmp_path / "sync.lock", 4242) is False


def test_wait_for_lock_sees_child_pid(tmp_path: Path) -> None:
    lock_path = _lock_file(tmp_path, 4242)

    assert sync_runtime.wait_for_lock(lock_path, 4242, attempts=1) is True


@pytest.mark.skipif(sys.platform.startswith("win"), reason="requires ps command semantics")
def test_stop_integration_refuses_unrelated_process(tmp_path: Path) -> None:
    proc = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(30)"],
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    lock_path = _lock_file(tmp_path, proc.pid)
    try:
        result = sync_runtime.stop_pidfile_with_reason(lock_path)
        assert result.stopped is False
        assert result.reason == "pid_unverified"
        assert proc.poll() is None
    finally:
        if proc.poll() is None:
            proc.terminate()
            proc.wait(timeout=2)
        assert os.path.exists(lock_path)
