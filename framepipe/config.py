#!/usr/bin/env python3
"""
Unified configuration loader for framepipe.

Load order (first found wins):
  1) FRAMEPIPE_CONFIG (env, absolute or relative to CWD)
  2) /etc/framepipe/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict

import yaml

from framepipe.errors import ConfigError

_DEFAULTS: Dict[str, Any] = {
    "video": {
        "frame_rate": 30,
        "quality": 70,
        "codec": "libx264",
        "preset": "veryfast",
        "output_pixel_format": "yuv420p",
    },
    "audio": {
        "enabled": False,
        "sample_rate": 44100,
        "channels": 2,
        "quality": 50,
    },
    "resize": {
        "enabled": False,
        "width": 640,
        "height": 480,
    },
    "encoder": {
        "binary": "ffmpeg",
        "connect_timeout_ms": 5000,
        "thread_queue_size": 512,
        "close_timeout_sec": None,
    },
    "backup": {
        "enabled": True,
        "mode": "raw",  # raw | images
        "rotation_seconds": 5.0,
        "profile": "live",  # live | fast
        "queue_policy": "unbounded",  # unbounded | drop_oldest | block
        "max_queue_frames": 0,
        "backlog_warn_frames": 300,
        "idle_wait_sec": 0.5,
        "compact_on_stop": True,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

BACKUP_MODES = ("raw", "images")
BACKUP_PROFILES = ("live", "fast")
QUEUE_POLICIES = ("unbounded", "drop_oldest", "block")

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("framepipe.config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        _log.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("FRAMEPIPE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/framepipe/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "LOG_LEVEL" in os.environ:
        value = os.environ["LOG_LEVEL"].strip().upper()
        if value:
            cfg.setdefault("logging", {})["level"] = value
    if "FFMPEG_BIN" in os.environ:
        value = os.environ["FFMPEG_BIN"].strip()
        if value:
            cfg.setdefault("encoder", {})["binary"] = value

    env_map: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
        "CONNECT_TIMEOUT_MS": ("encoder", "connect_timeout_ms", int),
        "VIDEO_FRAME_RATE": ("video", "frame_rate", float),
        "VIDEO_QUALITY": ("video", "quality", int),
        "BACKUP_ENABLED": ("backup", "enabled", _parse_bool),
        "BACKUP_MODE": ("backup", "mode", lambda s: s.strip().lower()),
        "BACKUP_ROTATION_SEC": ("backup", "rotation_seconds", float),
        "BACKUP_PROFILE": ("backup", "profile", lambda s: s.strip().lower()),
        "BACKUP_QUEUE_POLICY": ("backup", "queue_policy", lambda s: s.strip().lower()),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                pass


def validate_cfg(cfg: Dict[str, Any]) -> None:
    """Raise :class:`ConfigError` for values no component can run with."""

    backup = cfg.get("backup", {})
    if backup.get("mode") not in BACKUP_MODES:
        raise ConfigError(f"backup.mode must be one of {BACKUP_MODES}, got {backup.get('mode')!r}")
    if backup.get("profile") not in BACKUP_PROFILES:
        raise ConfigError(f"backup.profile must be one of {BACKUP_PROFILES}, got {backup.get('profile')!r}")
    if backup.get("queue_policy") not in QUEUE_POLICIES:
        raise ConfigError(
            f"backup.queue_policy must be one of {QUEUE_POLICIES}, got {backup.get('queue_policy')!r}"
        )
    if float(backup.get("rotation_seconds", 0)) <= 0:
        raise ConfigError("backup.rotation_seconds must be positive")
    video = cfg.get("video", {})
    if float(video.get("frame_rate", 0)) <= 0:
        raise ConfigError("video.frame_rate must be positive")
    if int(cfg.get("encoder", {}).get("connect_timeout_ms", 0)) <= 0:
        raise ConfigError("encoder.connect_timeout_ms must be positive")


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (framepipe/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    validate_cfg(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if _cfg_cache is None:
        get_cfg()
    return list(_search_paths)


def default_cfg() -> Dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def log_level(cfg: Dict[str, Any]) -> int:
    logging_cfg = cfg.get("logging", {})
    if logging_cfg.get("dev_mode"):
        return logging.DEBUG
    level = logging.getLevelName(str(logging_cfg.get("level", "INFO")).upper())
    return level if isinstance(level, int) else logging.INFO
