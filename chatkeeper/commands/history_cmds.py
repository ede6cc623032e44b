from __future__ import annotations

import json
from dataclasses import asdict

import typer
from rich import print
from rich.markup import escape

from .common import load_config_or_exit


def list_cmd(
    *,
    load_config,
    store_from_config,
    workspace_id: str | None,
    limit: int,
    min_messages: int,
    as_json: bool,
) -> None:
    config = load_config_or_exit(load_config)
    store = store_from_config(config)
    try:
        rows = store.list_conversations(
            workspace_id=workspace_id, limit=limit, min_messages=min_messages
        )
    finally:
        store.close()

    if as_json:
        typer.echo(json.dumps(rows, indent=2))
        return
    if not rows:
        print("No conversations backed up yet")
        return
    for row in rows:
        workspace = ""
        if row["workspace_name"]:
            workspace = f" [dim]{escape(row['workspace_name'])}[/dim]"
        print(
            f"- {row['id']}: {escape(row['title'])} "
            f"({row['message_count']} messages, updated {row['updated_at']}){workspace}"
        )


def show_cmd(
    *,
    load_config,
    store_from_config,
    conversation_id: str,
    last: int | None,
    as_json: bool,
) -> None:
    """Print one backed-up conversation; ``conversation_id`` may be a unique prefix."""

    config = load_config_or_exit(load_config)
    store = store_from_config(config)
    try:
        matches = store.match_conversation_ids(conversation_id)
        if not matches:
            print(f"[red]No backed-up conversation {conversation_id}[/red]")
            raise typer.Exit(code=1)
        if len(matches) > 1:
            print(f"[red]{conversation_id} matches several conversations:[/red]")
            for match in matches:
                print(f"- {match}")
            raise typer.Exit(code=1)
        conversation = store.get_conversation(matches[0])
    finally:
        store.close()

    messages = conversation.messages
    if last is not None:
        messages = messages[-last:] if last > 0 else []

    if as_json:
        data = asdict(conversation)
        data["messages"] = [asdict(message) for message in messages]
        typer.echo(json.dumps(data, indent=2))
        return
    print(f"[bold]{escape(conversation.title)}[/bold] ({conversation.id})")
    if conversation.workspace_path:
        print(f"- Workspace: {conversation.workspace_path}")
    if conversation.model_name:
        print(f"- Model: {conversation.model_name}")
    print(f"- Messages: {conversation.message_count} (updated {conversation.updated_at})")
    for message in messages:
        print(f"\n[bold]#{message.sequence} {message.role}[/bold]")
        # Raw text: message content may contain rich markup characters.
        typer.echo(message.content)
