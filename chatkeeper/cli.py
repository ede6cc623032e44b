from __future__ import annotations

import typer

from .commands.history_cmds import list_cmd, show_cmd
from .commands.restore_cmds import restore_cmd
from .commands.storage_cmds import (
    init_db_cmd,
    storage_cleanup_cmd,
    storage_config_cmd,
    storage_stats_cmd,
    storage_workspaces_cmd,
)
from .commands.sync_cmds import (
    sync_ack_cmd,
    sync_daemon_cmd,
    sync_now_cmd,
    sync_reset_cmd,
    sync_start_cmd,
    sync_status_cmd,
    sync_stop_cmd,
)
from .config import ChatKeeperConfig, get_config_path, load_config, write_config_file
from .daemon import DaemonContext, SyncDaemon
from .lifecycle import LifecycleManager, storage_stats
from .store import ChatStore
from .sync_runtime import (
    effective_status,
    spawn_daemon,
    stop_pidfile_with_reason,
    wait_for_lock,
)

app = typer.Typer(help="chatkeeper: keep Cursor chat history safe from wipes")
sync_app = typer.Typer(help="Capture chat history from Cursor")
storage_app = typer.Typer(help="Inspect and maintain the backup store")
app.add_typer(sync_app, name="sync")
app.add_typer(storage_app, name="storage")


def _store(config: ChatKeeperConfig) -> ChatStore:
    return ChatStore(config.db_path)


def _daemon(config: ChatKeeperConfig) -> SyncDaemon:
    return SyncDaemon(DaemonContext.from_config(config))


@app.command("init-db")
def init_db() -> None:
    """Create the backup database and a default config file."""

    init_db_cmd(
        load_config=load_config,
        store_from_config=_store,
        get_config_path=get_config_path,
        write_config_file=write_config_file,
    )


@app.command("restore")
def restore(
    all_: bool = typer.Option(False, "--all", help="Restore every conversation of the source"),
    conversation_id: str = typer.Option(None, "--id", help="Restore one conversation"),
    workspace_id: str = typer.Option(None, "--workspace", help="Restore one workspace"),
    force: bool = typer.Option(False, help="Write even if the source is not empty"),
    source: str = typer.Option(None, help="Source location key (default: global)"),
) -> None:
    """Write backed-up conversations back into Cursor."""

    restore_cmd(
        load_config=load_config,
        build_daemon=_daemon,
        all_=all_,
        conversation_id=conversation_id,
        workspace_id=workspace_id,
        force=force,
        source=source,
    )


@app.command("list")
def list_conversations(
    workspace_id: str = typer.Option(None, "--workspace", help="Only this workspace"),
    limit: int = typer.Option(20, "--limit", "-l", min=1, help="Maximum conversations to show"),
    min_messages: int = typer.Option(
        1, "--min-messages", "-m", min=0, help="Skip shorter conversations"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """List backed-up conversations, most recent first."""

    list_cmd(
        load_config=load_config,
        store_from_config=_store,
        workspace_id=workspace_id,
        limit=limit,
        min_messages=min_messages,
        as_json=as_json,
    )


@app.command("show")
def show_conversation(
    conversation_id: str = typer.Argument(..., help="Conversation id or a unique prefix"),
    last: int = typer.Option(None, "--last", "-n", min=0, help="Only the last N messages"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
) -> None:
    """Show one backed-up conversation."""

    show_cmd(
        load_config=load_config,
        store_from_config=_store,
        conversation_id=conversation_id,
        last=last,
        as_json=as_json,
    )


@sync_app.command("start")
def sync_start() -> None:
    """Start the sync daemon in the background."""

    sync_start_cmd(
        load_config=load_config,
        get_config_path=get_config_path,
        effective_status=effective_status,
        spawn_daemon=spawn_daemon,
        wait_for_lock=wait_for_lock,
    )


@sync_app.command("stop")
def sync_stop() -> None:
    """Stop the background sync daemon."""

    sync_stop_cmd(load_config=load_config, stop_pidfile_with_reason=stop_pidfile_with_reason)


@sync_app.command("status")
def sync_status(
    as_json: bool = typer.Option(False, "--json", help="Print status as JSON"),
) -> None:
    """Show daemon state, last tick and per-source wipe state."""

    sync_status_cmd(load_config=load_config, build_daemon=_daemon, as_json=as_json)


@sync_app.command("now")
def sync_now(
    as_json: bool = typer.Option(False, "--json", help="Print the tick report as JSON"),
) -> None:
    """Run one sync tick immediately."""

    sync_now_cmd(load_config=load_config, build_daemon=_daemon, as_json=as_json)


@sync_app.command("daemon")
def sync_daemon(
    interval_s: int | None = typer.Option(None, help="Sync interval in seconds"),
) -> None:
    """Run the sync daemon loop in the foreground."""

    sync_daemon_cmd(load_config=load_config, build_daemon=_daemon, interval_s=interval_s)


@sync_app.command("ack")
def sync_ack(
    source: str = typer.Option(None, help="Source location key (default: global)"),
) -> None:
    """Accept a source's current contents after a deliberate cleanup."""

    sync_ack_cmd(load_config=load_config, build_daemon=_daemon, source=source)


@sync_app.command("reset")
def sync_reset(
    source: str = typer.Option(None, help="Source location key (default: global)"),
) -> None:
    """Mark a source as wiped now and queue a restore."""

    sync_reset_cmd(load_config=load_config, build_daemon=_daemon, source=source)


@storage_app.command("stats")
def storage_stats_command() -> None:
    """Show backup size, quota usage and counts."""

    storage_stats_cmd(
        load_config=load_config, store_from_config=_store, storage_stats=storage_stats
    )


@storage_app.command("cleanup")
def storage_cleanup() -> None:
    """Apply retention, compression and the size quota now."""

    storage_cleanup_cmd(
        load_config=load_config, store_from_config=_store, lifecycle_manager=LifecycleManager
    )


@storage_app.command("workspaces")
def storage_workspaces() -> None:
    """List workspaces with backed-up conversations."""

    storage_workspaces_cmd(load_config=load_config, store_from_config=_store)


@storage_app.command("config")
def storage_config(
    as_json: bool = typer.Option(False, "--json", help="Print config as JSON"),
) -> None:
    """Show the effective configuration."""

    storage_config_cmd(load_config=load_config, get_config_path=get_config_path, as_json=as_json)


def main() -> None:
    app()
