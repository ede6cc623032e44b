from __future__ import annotations

from collections.abc import Callable

import typer
from rich import print

from ..config import ChatKeeperConfig
from ..errors import ConfigError


def load_config_or_exit(load_config: Callable[[], ChatKeeperConfig]) -> ChatKeeperConfig:
    try:
        return load_config()
    except ConfigError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    for unit in units:
        if value < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(value)} {unit}"
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{int(size)} B"
