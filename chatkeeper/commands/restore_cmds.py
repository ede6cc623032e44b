from __future__ import annotations

import typer
from rich import print

from ..errors import RestorePartialFailure, RestorePreconditionFailed, SourceError
from .common import load_config_or_exit
from .sync_cmds import _location_or_exit


def _selector(all_: bool, conversation_id: str | None, workspace_id: str | None) -> str:
    chosen = [flag for flag in (all_, conversation_id, workspace_id) if flag]
    if len(chosen) > 1:
        print("[red]Use only one of --all, --id or --workspace[/red]")
        raise typer.Exit(code=1)
    if conversation_id:
        return f"conversation:{conversation_id}"
    if workspace_id:
        return f"workspace:{workspace_id}"
    return "all"


def restore_cmd(
    *,
    load_config,
    build_daemon,
    all_: bool,
    conversation_id: str | None,
    workspace_id: str | None,
    force: bool,
    source: str | None,
) -> None:
    """Write stored conversations back into a source location."""

    selector = _selector(all_, conversation_id, workspace_id)
    config = load_config_or_exit(load_config)
    daemon = build_daemon(config)
    try:
        location = _location_or_exit(daemon, source)
        result = daemon.restore(location, selector, force=force)
    except RestorePreconditionFailed as exc:
        print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc
    except RestorePartialFailure as exc:
        result = exc.result
        print(
            f"[yellow]Partially restored {len(result.succeeded)} conversation(s) "
            f"into {result.location_key}; {len(result.failed)} failed[/yellow]"
        )
        for conversation_id_, reason in sorted(result.failed.items()):
            print(f"- {conversation_id_}: {reason}")
        raise typer.Exit(code=1) from exc
    except SourceError as exc:
        print(f"[red]Restore failed: {exc}[/red]")
        raise typer.Exit(code=1) from exc
    finally:
        daemon.store.close()

    if result.status == "nothing_to_do":
        print(f"[yellow]Nothing to restore for {selector} into {location.key}[/yellow]")
        return
    print(
        f"[green]Restored {len(result.succeeded)} conversation(s) "
        f"({result.messages_written} messages) into {location.key}[/green]"
    )
    if result.skipped:
        print(f"- skipped {len(result.skipped)} unknown conversation id(s)")
