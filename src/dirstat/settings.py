"""JSON-backed settings for scanning and cache defaults."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

from dirstat.utils import xdg_config_home

log = logging.getLogger(__name__)

_SETTINGS_DIR = "dirstat"
_SETTINGS_FILE = "settings.json"

DEFAULTS: dict[str, Any] = {
    "scan": {
        "progress_interval": 0.1,
        "cross_filesystems": False,
        "exclude_rules": [r".*/\.snapshot$"],
    },
    "cache": {
        "default_name": "dirstat.cache.gz",
    },
}


class Settings:
    """Persistent settings backed by a JSON file.

    Keys use dot notation and fall back to :data:`DEFAULTS`:
        settings.get("scan.progress_interval")   # 0.1 unless overridden
        settings.set("scan.cross_filesystems", True)  # writes + saves
    """

    _instance: Settings | None = None

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or (xdg_config_home() / _SETTINGS_DIR / _SETTINGS_FILE)
        self._data: dict[str, Any] = copy.deepcopy(DEFAULTS)
        self._load()

    @classmethod
    def instance(cls) -> Settings:
        """Return the shared settings instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value by dot-notation key."""
        node: Any = self._data
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key: str, value: Any) -> None:
        """Set a value by dot-notation key and persist it."""
        *parents, leaf = key.split(".")
        node = self._data
        for part in parents:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        node[leaf] = value
        self._save()

    @property
    def progress_interval(self) -> float:
        value = self.get("scan.progress_interval", 0.1)
        return float(value) if isinstance(value, (int, float)) and value >= 0 else 0.1

    @property
    def cross_filesystems(self) -> bool:
        return bool(self.get("scan.cross_filesystems", False))

    @property
    def exclude_rules(self) -> list[str]:
        rules = self.get("scan.exclude_rules", [])
        return [r for r in rules if isinstance(r, str)] if isinstance(rules, list) else []

    @property
    def default_cache_name(self) -> str:
        return str(self.get("cache.default_name", DEFAULTS["cache"]["default_name"]))

    def _load(self) -> None:
        """Merge the settings file over the defaults, tolerating a bad file."""
        if not self._path.exists():
            return
        try:
            stored = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            log.warning("Could not load settings from %s: %s", self._path, e)
            return
        if not isinstance(stored, dict):
            log.warning("Ignoring settings file %s: top level is not an object", self._path)
            return
        _merge(self._data, stored)

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(self._data, indent=2, ensure_ascii=False) + "\n",
                encoding="utf-8",
            )
        except OSError as e:
            log.warning("Could not save settings to %s: %s", self._path, e)


def _merge(base: dict[str, Any], override: dict[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
