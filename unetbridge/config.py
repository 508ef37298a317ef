"""Settings and host profiles for UNetBridge.

Both are stored as JSON files under ``~/.unetbridge/``.  Passwords never
touch the disk; :mod:`unetbridge.connection` keeps them in ``keyring``.
"""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

from unetbridge.connection import HostIdentity

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 15,
    "keepalive_interval": 30,
    "chunk_size": 256 * 1024,
    "poll_interval": 0.1,
    "grace_period": 10,
    "process_folder": "/tmp/unetbridge",
    "progress_ranges": {
        "stage": [0.0, 0.1],
        "execute": [0.1, 0.9],
        "fetch": [0.9, 1.0],
    },
}

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads and persists settings and remembered hosts.

    Files are written atomically (temp file, then rename).  A corrupt file
    is reset with a warning instead of raising.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = base_dir or Path.home() / ".unetbridge"
        self._config_path = self._base / "config.json"
        self._hosts_path = self._base / "hosts.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._hosts: list[dict[str, Any]] = self._load_hosts()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json`` merged over the defaults."""
        if not self._config_path.exists():
            logger.debug("No config file — creating defaults")
            config = copy.deepcopy(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            loaded = json.loads(self._config_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            merged = copy.deepcopy(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s) — resetting to defaults", exc)
            config = copy.deepcopy(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    def _load_hosts(self) -> list[dict[str, Any]]:
        if not self._hosts_path.exists():
            return []
        try:
            loaded = json.loads(self._hosts_path.read_text(encoding="utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("Hosts root must be a JSON array")
            return loaded
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt hosts.json (%s) — resetting to empty list", exc)
            self._atomic_write(self._hosts_path, [])
            return []

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._config)

    def progress_ranges(self) -> dict[str, tuple[float, float]]:
        """Return the per-step progress windows as ``{step: (lo, hi)}``.

        Malformed entries fall back to the default window for that step.
        """
        configured = self._config.get("progress_ranges") or {}
        ranges: dict[str, tuple[float, float]] = {}
        for step, default in DEFAULT_CONFIG["progress_ranges"].items():
            value = configured.get(step, default) if isinstance(configured, dict) else default
            try:
                lo, hi = (float(v) for v in value)
            except (TypeError, ValueError):
                logger.warning("Invalid progress range for %s: %r — using default", step, value)
                lo, hi = default
            if not 0.0 <= lo <= hi <= 1.0:
                logger.warning("Progress range for %s out of bounds: %r — using default", step, value)
                lo, hi = default
            ranges[step] = (lo, hi)
        return ranges

    # ------------------------------------------------------------------
    # Remembered hosts
    # ------------------------------------------------------------------

    def remember_host(
        self,
        identity: HostIdentity,
        auth_method: str = "password",
        key_path: str | None = None,
    ) -> None:
        """Upsert the profile for *identity* after a successful connect."""
        if not identity.host:
            raise ValueError("Host must not be empty")
        entry = {
            "host": identity.host,
            "port": identity.port,
            "username": identity.username,
            "auth_method": auth_method,
            "key_path": key_path,
        }
        for i, existing in enumerate(self._hosts):
            if self._same_host(existing, identity):
                self._hosts[i] = entry
                break
        else:
            self._hosts.append(entry)
        self._atomic_write(self._hosts_path, self._hosts)
        logger.info("Host remembered: %s", identity)

    def get_hosts(self) -> list[dict[str, Any]]:
        return [dict(h) for h in self._hosts]

    def get_host(self, identity: HostIdentity) -> dict[str, Any] | None:
        for entry in self._hosts:
            if self._same_host(entry, identity):
                return dict(entry)
        return None

    def forget_host(self, identity: HostIdentity) -> bool:
        """Delete the profile for *identity*; returns False if none existed."""
        remaining = [h for h in self._hosts if not self._same_host(h, identity)]
        if len(remaining) == len(self._hosts):
            logger.warning("forget_host: host not found: %s", identity)
            return False
        self._hosts = remaining
        self._atomic_write(self._hosts_path, self._hosts)
        logger.info("Host forgotten: %s", identity)
        return True

    @staticmethod
    def _same_host(entry: dict[str, Any], identity: HostIdentity) -> bool:
        return (
            entry.get("host") == identity.host
            and entry.get("port", 22) == identity.port
            and entry.get("username", "") == identity.username
        )
