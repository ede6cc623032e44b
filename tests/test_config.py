import json
from pathlib import Path

import pytest

from chatkeeper.config import (
    GB,
    ChatKeeperConfig,
    get_config_path,
    load_config,
    read_config_file,
    write_config_file,
)
from chatkeeper.errors import ConfigError


def test_read_config_file_rejects_invalid_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("{not-json}")
    with pytest.raises(ConfigError, match="invalid config json"):
        read_config_file(config_path)


def test_read_config_file_rejects_non_object(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text("[1, 2]")
    with pytest.raises(ConfigError, match="must be an object"):
        read_config_file(config_path)


def test_missing_or_blank_config_is_empty(tmp_path: Path) -> None:
    assert read_config_file(tmp_path / "absent.json") == {}
    blank = tmp_path / "blank.json"
    blank.write_text("  \n")
    assert read_config_file(blank) == {}


def test_config_path_follows_env(tmp_path: Path) -> None:
    assert get_config_path() == tmp_path / "config.json"
    assert get_config_path(tmp_path / "other.json") == tmp_path / "other.json"


def test_defaults_without_a_file(tmp_path: Path) -> None:
    cfg = load_config()

    assert cfg.sync_enabled is True
    assert cfg.sync_interval_s == 120
    assert cfg.sync_wipe_confirm_ticks == 2
    assert cfg.quota_bytes == 10 * GB
    assert cfg.storage_retention_days == 30
    assert cfg.db_path == tmp_path / "data" / "storage.db"


def test_load_config_reads_nested_document(tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps(
            {
                "sync": {"interval_secs": 60, "auto_restore": False, "wipe_threshold": 0.25},
                "storage": {"max_size_gb": 2.5, "backup_retention_days": 90},
                "unknown": {"ignored": True},
            }
        )
    )

    cfg = load_config()

    assert cfg.sync_interval_s == 60
    assert cfg.sync_auto_restore is False
    assert cfg.sync_wipe_threshold == 0.25
    assert cfg.storage_max_size_gb == 2.5
    assert cfg.quota_bytes == int(2.5 * GB)
    assert cfg.storage_retention_days == 90


def test_env_overrides_file(monkeypatch, tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps({"sync": {"interval_secs": 60}, "storage": {"compression": True}})
    )
    monkeypatch.setenv("CHATKEEPER_SYNC_INTERVAL_S", "15")
    monkeypatch.setenv("CHATKEEPER_COMPRESSION", "off")
    monkeypatch.setenv("CHATKEEPER_AUTO_RESTORE", "no")

    cfg = load_config()

    assert cfg.sync_interval_s == 15
    assert cfg.storage_compression is False
    assert cfg.sync_auto_restore is False


def test_invalid_value_warns_and_keeps_default(tmp_path: Path) -> None:
    (tmp_path / "config.json").write_text(
        json.dumps({"sync": {"interval_secs": "soon"}, "storage": {"max_size_gb": True}})
    )

    with pytest.warns(RuntimeWarning, match="Invalid"):
        cfg = load_config()

    assert cfg.sync_interval_s == 120
    assert cfg.storage_max_size_gb == 10.0


def test_flat_field_names_are_accepted(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("CHATKEEPER_DATA_DIR")
    (tmp_path / "config.json").write_text(
        json.dumps({"sync_wipe_confirm_ticks": 3, "data_dir": str(tmp_path / "elsewhere")})
    )

    cfg = load_config()

    assert cfg.sync_wipe_confirm_ticks == 3
    assert cfg.lock_path == tmp_path / "elsewhere" / "sync.lock"


def test_written_document_loads_back(tmp_path: Path) -> None:
    cfg = ChatKeeperConfig(sync_interval_s=300, storage_compression=False)

    path = write_config_file(cfg.to_document())

    assert path == tmp_path / "config.json"
    loaded = load_config()
    assert loaded.sync_interval_s == 300
    assert loaded.storage_compression is False
    assert json.loads(path.read_text())["paths"]["data_dir"] == cfg.data_dir
