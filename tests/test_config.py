"""Tests covering config file loading and environment variable overrides."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from framepipe import config as config_module
from framepipe.errors import ConfigError

_ENV_KEYS = (
    "FRAMEPIPE_CONFIG",
    "DEV",
    "LOG_LEVEL",
    "FFMPEG_BIN",
    "CONNECT_TIMEOUT_MS",
    "VIDEO_FRAME_RATE",
    "VIDEO_QUALITY",
    "BACKUP_ENABLED",
    "BACKUP_MODE",
    "BACKUP_ROTATION_SEC",
    "BACKUP_PROFILE",
    "BACKUP_QUEUE_POLICY",
)


def _reset_config_state(monkeypatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


def test_config_file_merges_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("video:\n  quality: 90\nbackup:\n  rotation_seconds: 2\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("FRAMEPIPE_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["video"]["quality"] == 90
    assert cfg["video"]["frame_rate"] == 30
    assert cfg["backup"]["rotation_seconds"] == 2
    assert config_module.active_config_path() == config_path.resolve()


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("backup:\n  mode: raw\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("FRAMEPIPE_CONFIG", str(config_path))
    monkeypatch.setenv("FFMPEG_BIN", "/usr/local/bin/ffmpeg")
    monkeypatch.setenv("CONNECT_TIMEOUT_MS", "1500")
    monkeypatch.setenv("BACKUP_MODE", "Images")
    monkeypatch.setenv("BACKUP_ENABLED", "false")
    monkeypatch.setenv("VIDEO_QUALITY", "not-a-number")

    cfg = config_module.get_cfg()

    assert cfg["encoder"]["binary"] == "/usr/local/bin/ffmpeg"
    assert cfg["encoder"]["connect_timeout_ms"] == 1500
    assert cfg["backup"]["mode"] == "images"
    assert cfg["backup"]["enabled"] is False
    # unparsable values are ignored
    assert cfg["video"]["quality"] == 70


def test_invalid_values_raise_config_error(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("backup:\n  queue_policy: lifo\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("FRAMEPIPE_CONFIG", str(config_path))

    with pytest.raises(ConfigError):
        config_module.get_cfg()


def test_log_level_honours_dev_mode(monkeypatch) -> None:
    _reset_config_state(monkeypatch)
    cfg = config_module.default_cfg()
    assert config_module.log_level(cfg) == logging.INFO

    cfg["logging"]["level"] = "warning"
    assert config_module.log_level(cfg) == logging.WARNING

    cfg["logging"]["dev_mode"] = True
    assert config_module.log_level(cfg) == logging.DEBUG
