from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterable
from pathlib import Path

from ..store.types import SyncState
from .parser import workspace_path_from_uri
from .reader import SourceLocation

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"
STATE_DB = "state.vscdb"


def default_cursor_dirs() -> list[Path]:
    home = Path.home()
    candidates = [
        home / ".config" / "Cursor",
        home / "Library" / "Application Support" / "Cursor",
        home / ".cursor",
    ]
    appdata = os.environ.get("APPDATA")
    if sys.platform.startswith("win") and appdata:
        candidates.insert(0, Path(appdata) / "Cursor")
    return candidates


def cursor_config_dir(configured: str | None = None) -> Path:
    """Configured dir if set, else the first default that exists, else the first default."""
    if configured:
        return Path(configured).expanduser()
    candidates = default_cursor_dirs()
    for candidate in candidates:
        if (candidate / "User").is_dir():
            return candidate
    return candidates[0]


def global_location(base: Path) -> SourceLocation:
    return SourceLocation(
        key=GLOBAL_KEY,
        path=base / "User" / "globalStorage" / STATE_DB,
        kind="global",
    )


def _workspace_folder(ws_dir: Path) -> str | None:
    meta_path = ws_dir / "workspace.json"
    try:
        data = json.loads(meta_path.read_text())
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as exc:
        logger.debug("unreadable %s: %s", meta_path, exc)
        return None
    if not isinstance(data, dict):
        return None
    folder = data.get("folder") or data.get("workspace")
    if not isinstance(folder, str):
        return None
    return workspace_path_from_uri(folder)


def workspace_locations(base: Path) -> list[SourceLocation]:
    storage = base / "User" / "workspaceStorage"
    if not storage.is_dir():
        return []
    locations: list[SourceLocation] = []
    for ws_dir in sorted(storage.iterdir()):
        db_path = ws_dir / STATE_DB
        if not ws_dir.is_dir() or not db_path.exists():
            continue
        locations.append(
            SourceLocation(
                key=f"workspace:{ws_dir.name}",
                path=db_path,
                kind="workspace",
                workspace_id=ws_dir.name,
                workspace_path=_workspace_folder(ws_dir) or str(ws_dir),
            )
        )
    return locations


def discover_locations(
    cursor_dir: str | None = None, known: Iterable[SyncState] = ()
) -> list[SourceLocation]:
    """Global location first, then workspaces, then previously seen locations that vanished.

    Vanished locations are still returned so they surface as unavailable
    instead of silently dropping out of status.
    """
    base = cursor_config_dir(cursor_dir)
    locations = [global_location(base), *workspace_locations(base)]
    seen = {location.key for location in locations}
    for state in known:
        if state.location_key in seen:
            continue
        locations.append(
            SourceLocation(
                key=state.location_key,
                path=Path(state.path),
                kind=state.kind,
                workspace_id=state.workspace_id,
            )
        )
    return locations
