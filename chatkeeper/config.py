from __future__ import annotations

import json
import os
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path("~/.config/chatkeeper/config.json").expanduser()
DEFAULT_DATA_DIR = "~/.chatkeeper"
GB = 1024**3

# Nested document keys -> dataclass fields.
CONFIG_KEYS = {
    ("sync", "interval_secs"): "sync_interval_s",
    ("sync", "enabled"): "sync_enabled",
    ("sync", "read_timeout_secs"): "sync_read_timeout_s",
    ("sync", "wipe_threshold"): "sync_wipe_threshold",
    ("sync", "wipe_confirm_ticks"): "sync_wipe_confirm_ticks",
    ("sync", "auto_restore"): "sync_auto_restore",
    ("storage", "max_size_gb"): "storage_max_size_gb",
    ("storage", "backup_retention_days"): "storage_retention_days",
    ("storage", "compression"): "storage_compression",
    ("paths", "data_dir"): "data_dir",
    ("paths", "cursor_dir"): "cursor_dir",
}

INT_KEYS = {"sync_interval_s", "sync_wipe_confirm_ticks", "storage_retention_days"}
FLOAT_KEYS = {"sync_read_timeout_s", "sync_wipe_threshold", "storage_max_size_gb"}
BOOL_KEYS = {"sync_enabled", "sync_auto_restore", "storage_compression"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CHATKEEPER_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"invalid config json in {config_path}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


@dataclass
class ChatKeeperConfig:
    sync_enabled: bool = True
    sync_interval_s: int = 120
    sync_read_timeout_s: float = 30.0
    # Fraction of the last good snapshot below which a tick counts as low.
    sync_wipe_threshold: float = 0.5
    sync_wipe_confirm_ticks: int = 2
    sync_auto_restore: bool = True
    storage_max_size_gb: float = 10.0
    storage_retention_days: int = 30
    storage_compression: bool = True
    data_dir: str = DEFAULT_DATA_DIR
    cursor_dir: str | None = None

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.data_path / "storage.db"

    @property
    def lock_path(self) -> Path:
        return self.data_path / "sync.lock"

    @property
    def tick_lock_path(self) -> Path:
        return self.data_path / "tick.lock"

    @property
    def log_path(self) -> Path:
        return self.data_path / "sync-daemon.log"

    @property
    def quota_bytes(self) -> int:
        return int(self.storage_max_size_gb * GB)

    def to_document(self) -> dict[str, Any]:
        doc: dict[str, dict[str, Any]] = {}
        for (section, key), attr in CONFIG_KEYS.items():
            doc.setdefault(section, {})[key] = getattr(self, attr)
        return doc


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        warnings.warn(f"Invalid number for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid number for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def load_config(path: Path | None = None) -> ChatKeeperConfig:
    cfg = ChatKeeperConfig()
    cfg = _apply_dict(cfg, _flatten(read_config_file(path)))
    cfg = _apply_env(cfg)
    return cfg


def _flatten(data: dict[str, Any]) -> dict[str, Any]:
    flat: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                attr = CONFIG_KEYS.get((key, sub_key))
                if attr is not None:
                    flat[attr] = sub_value
            continue
        # Flat field names are accepted too.
        flat[key] = value
    return flat


def _apply_dict(cfg: ChatKeeperConfig, data: dict[str, Any]) -> ChatKeeperConfig:
    for key, value in data.items():
        if not hasattr(cfg, key) or isinstance(getattr(type(cfg), key, None), property):
            continue
        if key in INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in FLOAT_KEYS:
            setattr(cfg, key, _parse_float(value, getattr(cfg, key), key=key))
            continue
        if key in BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        if value is not None and not isinstance(value, str):
            warnings.warn(f"Invalid path for {key}: {value!r}", RuntimeWarning, stacklevel=2)
            continue
        setattr(cfg, key, value)
    return cfg


def _apply_env(cfg: ChatKeeperConfig) -> ChatKeeperConfig:
    cfg.sync_enabled = _parse_bool(os.getenv("CHATKEEPER_SYNC_ENABLED"), cfg.sync_enabled)
    cfg.sync_interval_s = _parse_int(
        os.getenv("CHATKEEPER_SYNC_INTERVAL_S"), cfg.sync_interval_s, key="sync_interval_s"
    )
    cfg.sync_read_timeout_s = _parse_float(
        os.getenv("CHATKEEPER_READ_TIMEOUT_S"),
        cfg.sync_read_timeout_s,
        key="sync_read_timeout_s",
    )
    cfg.sync_auto_restore = _parse_bool(
        os.getenv("CHATKEEPER_AUTO_RESTORE"), cfg.sync_auto_restore
    )
    cfg.storage_max_size_gb = _parse_float(
        os.getenv("CHATKEEPER_MAX_SIZE_GB"), cfg.storage_max_size_gb, key="storage_max_size_gb"
    )
    cfg.storage_retention_days = _parse_int(
        os.getenv("CHATKEEPER_RETENTION_DAYS"),
        cfg.storage_retention_days,
        key="storage_retention_days",
    )
    cfg.storage_compression = _parse_bool(
        os.getenv("CHATKEEPER_COMPRESSION"), cfg.storage_compression
    )
    cfg.data_dir = os.getenv("CHATKEEPER_DATA_DIR", cfg.data_dir)
    cfg.cursor_dir = os.getenv("CHATKEEPER_CURSOR_DIR", cfg.cursor_dir)
    return cfg
