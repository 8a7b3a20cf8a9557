# palette-cli — Keystroke-Driven Command Palette
# Copyright (c) 2025
# TriFactoria (Andrew Blankfield)
#
# Licensed under the Business Source License 1.1 (BSL 1.1).
# You may use, modify, and redistribute this file under the terms of the BSL.
# On the Change Date (2029-01-01), this file will be licensed under
# the Apache License, Version 2.0.

"""
Configuration loading and data root resolution for palette-cli.

Handles:
- Data root resolution (PALETTE_DATA_HOME, ~/.local/share)
- DB and log path helpers
- Packaged YAML defaults loading (palette_cli/defaults/system.yaml)
- User override file (PALETTE_CONFIG, ~/.config/palette/config.yaml)
"""

from __future__ import annotations

import copy
import os
from importlib import resources as importlib_resources
from pathlib import Path
from typing import Any

import yaml


# -----------------------
# Config model wrapper
# -----------------------


class YAMLConfig:
    """Simple config wrapper with dotted-path lookup."""

    def __init__(self, config_dict: dict[str, Any]):
        self._config = config_dict

    @property
    def execution(self) -> dict[str, Any]:
        return self._section("execution")

    @property
    def completion(self) -> dict[str, Any]:
        return self._section("completion")

    @property
    def history(self) -> dict[str, Any]:
        return self._section("history")

    @property
    def ui(self) -> dict[str, Any]:
        return self._section("ui")

    @property
    def aliases(self) -> dict[str, str]:
        raw = self._config.get("aliases") or {}
        if not isinstance(raw, dict):
            return {}
        return {str(k): str(v) for k, v in raw.items()}

    @property
    def applications(self) -> list[dict[str, Any]]:
        raw = self._config.get("applications") or []
        return [a for a in raw if isinstance(a, dict)] if isinstance(
            raw, list
        ) else []

    def _section(self, name: str) -> dict[str, Any]:
        value = self._config.get(name, {})
        return value if isinstance(value, dict) else {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def get_path(self, path: str, default: Any = None) -> Any:
        """
        Nested lookup using dot-separated path.
        Example: get_path("ui.theme.style", {}) -> dict style mapping
        """
        if not path:
            return default

        cur: Any = self._config
        for part in path.split("."):
            if not isinstance(cur, dict):
                return default
            if part not in cur:
                return default
            cur = cur[part]
        return cur


# -----------------------
# Data root + paths
# -----------------------


def get_data_root() -> Path:
    """Get the data root directory for palette-cli.

    Resolution order:
    1. PALETTE_DATA_HOME environment variable (if set)
    2. ~/.local/share (default, XDG_DATA_HOME is ignored)
    """
    data_home = os.getenv("PALETTE_DATA_HOME")
    if data_home:
        root = Path(data_home)
    else:
        root = Path.home() / ".local" / "share"

    root.mkdir(parents=True, exist_ok=True)
    return root


def db_path(data_root: Path) -> Path:
    """<data_root>/palette/palette.db"""
    return data_root / "palette" / "palette.db"


def logs_dir(data_root: Path) -> Path:
    """<data_root>/palette/logs"""
    return data_root / "palette" / "logs"


def user_config_path() -> Path:
    """PALETTE_CONFIG, else ~/.config/palette/config.yaml."""
    override = os.getenv("PALETTE_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "palette" / "config.yaml"


# -----------------------
# YAML loading
# -----------------------


def _defaults_dir() -> Path:
    """Return the installed path to packaged defaults directory."""
    return Path(
        importlib_resources.files("palette_cli.defaults")
    )  # type: ignore[arg-type]


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"Malformed YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"YAML {path} must load to a mapping/dict.")
    return data


def load_defaults_yaml(filename: str) -> dict[str, Any]:
    """
    Load a YAML file from palette_cli/defaults/.
    """
    defaults_dir = _defaults_dir()
    path = defaults_dir / filename
    if not path.exists():
        raise FileNotFoundError(
            f"Missing defaults YAML: {filename} "
            f"(looked in {defaults_dir})"
        )
    return _read_yaml(path)


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge override into a copy of base; nested mappings merge, rest replace."""
    out = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = deep_merge(out[key], value)
        else:
            out[key] = copy.deepcopy(value)
    return out


def load_config(user_path: Path | None = None) -> YAMLConfig:
    """
    Load system.yaml from packaged defaults, merged with the user file.

    A missing user file is fine; a malformed one raises ValueError.
    """
    data = load_defaults_yaml("system.yaml")
    path = user_path if user_path is not None else user_config_path()
    if path.is_file():
        data = deep_merge(data, _read_yaml(path))
    return YAMLConfig(data)
