from __future__ import annotations

import json
import logging

import typer
from rich import print

from ..errors import AlreadyRunning
from .common import load_config_or_exit


def sync_start_cmd(
    *, load_config, get_config_path, effective_status, spawn_daemon, wait_for_lock
) -> None:
    config = load_config_or_exit(load_config)
    if not config.sync_enabled:
        print("[yellow]Sync is disabled (set sync.enabled in the config).[/yellow]")
        raise typer.Exit(code=1)
    status = effective_status(config.lock_path)
    if status.running:
        print(f"[yellow]Sync already running (pid {status.pid})[/yellow]")
        return
    pid = spawn_daemon(
        interval_s=config.sync_interval_s,
        log_path=config.log_path,
        config_path=get_config_path(),
    )
    if not wait_for_lock(config.lock_path, pid):
        print(f"[red]Sync daemon (pid {pid}) did not start; see {config.log_path}[/red]")
        raise typer.Exit(code=1)
    print(f"[green]Started sync daemon (pid {pid})[/green]")


def sync_stop_cmd(*, load_config, stop_pidfile_with_reason) -> None:
    config = load_config_or_exit(load_config)
    result = stop_pidfile_with_reason(config.lock_path)
    if result.stopped:
        print(f"[green]Stopped sync daemon (pid {result.pid})[/green]")
        return
    if result.reason in {"not_running", "pid_not_running"}:
        print("[yellow]Sync already stopped[/yellow]")
        return
    print(f"[red]Could not stop sync daemon: {result.reason} (pid {result.pid})[/red]")
    raise typer.Exit(code=1)


def sync_status_cmd(*, load_config, build_daemon, as_json: bool) -> None:
    config = load_config_or_exit(load_config)
    daemon = build_daemon(config)
    try:
        status = daemon.status()
    finally:
        daemon.store.close()
    if as_json:
        typer.echo(json.dumps(status.to_dict(), indent=2, default=str))
        return

    label = "[green]running[/green]" if status.running else "[yellow]not running[/yellow]"
    extra = f" (pid {status.pid})" if status.pid else ""
    print(f"- Sync: {label}{extra}")
    heartbeat = status.heartbeat or {}
    if heartbeat.get("last_tick_at"):
        outcome = heartbeat.get("last_tick_status") or "unknown"
        print(f"- Last tick: {heartbeat['last_tick_at']} ({outcome})")
        if heartbeat.get("last_tick_error"):
            print(f"  [red]{heartbeat['last_tick_error']}[/red]")
    else:
        print("- Last tick: never")
    counts = status.counts
    print(
        f"- Stored: {counts['conversations']} conversations, "
        f"{counts['messages']} messages, {counts['workspaces']} workspaces"
    )
    if status.pending_restores:
        print(f"- Pending restores: {status.pending_restores}")
    if not status.sources:
        print("- Sources: none seen yet")
        return
    print("[bold]Sources[/bold]")
    for source in status.sources:
        state = source["wipe_state"]
        color = {"normal": "green", "suspect": "yellow"}.get(state, "red")
        line = (
            f"- {source['location_key']}: [{color}]{state}[/{color}] "
            f"({source['last_seen_conversation_count']} conversations, "
            f"{source['last_seen_total_messages']} messages)"
        )
        if source.get("last_error"):
            line += f" last error: {source['last_error_kind']} {source['last_error']}"
        print(line)


def _print_tick(report) -> None:
    for source in report.sources:
        if source.error is not None:
            print(f"- {source.location_key}: [red]{source.error_kind}[/red] {source.error}")
            continue
        summary = source.merge.diff.summary() if source.merge else {}
        state = source.observation.state if source.observation else "unknown"
        print(
            f"- {source.location_key}: {summary.get('new', 0)} new, "
            f"{summary.get('appended_messages', 0)} appended messages, "
            f"{summary.get('diverged', 0)} diverged ({state})"
        )
    for result in report.restores:
        print(f"- restored {len(result.succeeded)} conversation(s) into {result.location_key}")
    if report.lifecycle is not None and report.lifecycle.removed_count:
        print(
            f"- storage: removed {report.lifecycle.removed_count} conversation(s), "
            f"compressed {len(report.lifecycle.compressed_ids)}"
        )


def sync_now_cmd(*, load_config, build_daemon, as_json: bool) -> None:
    config = load_config_or_exit(load_config)
    daemon = build_daemon(config)
    try:
        report = daemon.force_tick()
    finally:
        daemon.store.close()
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        _print_tick(report)
    if report.status == "ok":
        if not as_json:
            print("[green]Sync complete[/green]")
        return
    if report.status == "partial":
        if not as_json:
            print(f"[yellow]Sync finished with errors: {report.error_summary()}[/yellow]")
        raise typer.Exit(code=1)
    if not as_json:
        print(f"[red]Sync failed: {report.error}[/red]")
    raise typer.Exit(code=1)


def sync_daemon_cmd(*, load_config, build_daemon, interval_s: int | None) -> None:
    """Run the sync loop in the foreground until SIGTERM or SIGINT."""

    config = load_config_or_exit(load_config)
    if not config.sync_enabled:
        print("[yellow]Sync is disabled (set sync.enabled in the config).[/yellow]")
        raise typer.Exit(code=1)
    if interval_s:
        config.sync_interval_s = interval_s
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    daemon = build_daemon(config)
    daemon.install_signal_handlers()
    try:
        daemon.run_forever()
    except AlreadyRunning as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        daemon.store.close()


def _location_or_exit(daemon, source: str | None):
    if source is None:
        return daemon.context.default_location()
    try:
        return daemon.context.location_for(source)
    except KeyError as exc:
        print(f"[red]Unknown source location: {source}[/red]")
        raise typer.Exit(code=1) from exc


def sync_ack_cmd(*, load_config, build_daemon, source: str | None) -> None:
    config = load_config_or_exit(load_config)
    daemon = build_daemon(config)
    try:
        location = _location_or_exit(daemon, source)
        state = daemon.acknowledge(location.key)
    finally:
        daemon.store.close()
    if state is None:
        print(f"[yellow]Nothing to acknowledge: {location.key} has not been synced yet[/yellow]")
        return
    print(f"[green]Acknowledged {location.key}; its current contents are the new baseline[/green]")


def sync_reset_cmd(*, load_config, build_daemon, source: str | None) -> None:
    config = load_config_or_exit(load_config)
    daemon = build_daemon(config)
    try:
        location = _location_or_exit(daemon, source)
        request_id = daemon.reset(location)
    finally:
        daemon.store.close()
    print(
        f"[yellow]Marked {location.key} as wiped; restore #{request_id} runs on the next tick "
        "(or run `chatkeeper sync now`)[/yellow]"
    )
