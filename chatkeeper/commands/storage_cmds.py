from __future__ import annotations

import json

import typer
from rich import print

from ..errors import QuotaExceededAfterEnforcement
from .common import format_bytes, load_config_or_exit


def init_db_cmd(*, load_config, store_from_config, get_config_path, write_config_file) -> None:
    """Create the canonical store and a default config file; existing ones are kept."""

    config = load_config_or_exit(load_config)
    config_path = get_config_path()
    if not config_path.exists():
        write_config_file(config.to_document(), config_path)
        print(f"Wrote default config to {config_path}")
    store = store_from_config(config)
    try:
        print(f"Initialized database at {store.db_path}")
    finally:
        store.close()


def storage_stats_cmd(*, load_config, store_from_config, storage_stats) -> None:
    config = load_config_or_exit(load_config)
    store = store_from_config(config)
    try:
        stats = storage_stats(store, config)
    finally:
        store.close()

    print("[bold]Storage[/bold]")
    print(f"- Database: {stats['database_path']} ({format_bytes(stats['database_bytes'])})")
    print(
        f"- Backups: {format_bytes(stats['total_bytes'])} of "
        f"{format_bytes(stats['quota_bytes'])} ({stats['usage_percent']:.1f}%)"
    )
    print(
        f"- Conversations: {stats['conversations']} "
        f"({stats['compressed_conversations']} compressed, {stats['tombstones']} pruned)"
    )
    print(f"- Messages: {stats['messages']}")
    print(f"- Workspaces: {stats['workspaces']}")
    print(f"- Retention: {stats['retention_days']} days")


def storage_cleanup_cmd(*, load_config, store_from_config, lifecycle_manager) -> None:
    config = load_config_or_exit(load_config)
    store = store_from_config(config)
    try:
        report = lifecycle_manager().enforce(
            store,
            quota_bytes=config.quota_bytes,
            retention_days=config.storage_retention_days,
            compression=config.storage_compression,
        )
    except QuotaExceededAfterEnforcement as exc:
        report = exc.report
        print(
            f"[red]Still over quota after cleanup: {format_bytes(report.total_bytes_after)} "
            f"of {format_bytes(report.quota_bytes)}[/red]"
        )
        if report.protected_ids:
            print(
                f"- {len(report.protected_ids)} conversation(s) kept as the last copy of a source"
            )
        raise typer.Exit(code=1) from exc
    finally:
        store.close()

    if not report.removed_count and not report.compressed_ids:
        print("[green]Nothing to clean up[/green]")
        return
    print(
        f"[green]Pruned {len(report.pruned_ids)}, evicted {len(report.evicted_ids)}, "
        f"compressed {len(report.compressed_ids)}; freed {format_bytes(report.freed_bytes)}"
        "[/green]"
    )


def storage_workspaces_cmd(*, load_config, store_from_config) -> None:
    config = load_config_or_exit(load_config)
    store = store_from_config(config)
    try:
        workspaces = store.list_workspaces()
    finally:
        store.close()
    if not workspaces:
        print("No workspaces recorded yet")
        return
    for workspace in workspaces:
        print(
            f"- {workspace['id']}: {workspace['display_name']} "
            f"({workspace['conversations']} conversations) {workspace['path']}"
        )


def storage_config_cmd(*, load_config, get_config_path, as_json: bool) -> None:
    config = load_config_or_exit(load_config)
    document = config.to_document()
    if as_json:
        typer.echo(json.dumps(document, indent=2))
        return
    print(f"[bold]Config[/bold] {get_config_path()}")
    for section, values in document.items():
        for key, value in values.items():
            print(f"- {section}.{key}: {value}")
    print(f"- data: {config.db_path}")
