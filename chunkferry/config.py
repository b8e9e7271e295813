"""Configuration management for ChunkFerry.

Settings are stored as ``config.json`` inside the work directory (by default
``./.chunkferry/``), next to the ledger and staging directories they govern.
"""

from __future__ import annotations

import getpass
import json
import logging
import math
from pathlib import Path
from typing import Any

from chunkferry.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_WORK_DIR = Path(".chunkferry")

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "chunk_size_mb": 4000,
    "max_retries": 2,
    "retry_delay": 2,
    "mount_timeout": 30,
    "mount_poll_interval": 1,
    "media_root": None,
    "source_label": "USB stick",
    "dest_label": "SSD",
    "eject_settle_delay": 1,
    "unplug_settle_delay": 2,
    "transfer_engine": "auto",
}

TRANSFER_ENGINES = ("auto", "rsync", "local")

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Manages run settings for one work directory.

    Writes files atomically (write-to-temp, then rename) to prevent
    corruption on unexpected exit.  A corrupt config triggers a warning and
    a safe reset; it never aborts the run.
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        """Initialise, creating the work directory if necessary."""
        self._base = base_dir or DEFAULT_WORK_DIR
        self._config_path = self._base / "config.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()

    @property
    def base_dir(self) -> Path:
        """The work directory holding config, ledger and staging area."""
        return self._base

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _atomic_write(self, path: Path, data: Any) -> None:
        """Serialise *data* as JSON and write atomically to *path*."""
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc)
            raise

    def _load_config(self) -> dict[str, Any]:
        """Load ``config.json``, resetting to defaults on corruption."""
        if not self._config_path.exists():
            logger.debug("No config file, creating defaults in %s", self._config_path)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

        try:
            raw = self._config_path.read_text(encoding="utf-8")
            loaded = json.loads(raw)
            if not isinstance(loaded, dict):
                raise ValueError("Config root must be a JSON object")
            # Merge with defaults so new keys are always present
            merged = dict(DEFAULT_CONFIG)
            merged.update(loaded)
            return merged
        except (json.JSONDecodeError, ValueError, OSError) as exc:
            logger.warning("Corrupt config.json (%s), resetting to defaults", exc)
            config = dict(DEFAULT_CONFIG)
            self._atomic_write(self._config_path, config)
            return config

    # ------------------------------------------------------------------
    # Config access
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value for *key*, or *default* if missing."""
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set *key* to *value* and persist the config file."""
        self._config[key] = value
        self._atomic_write(self._config_path, self._config)
        logger.debug("Config updated: %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        """Return a shallow copy of the full config dict."""
        return dict(self._config)

    # ------------------------------------------------------------------
    # Derived settings
    # ------------------------------------------------------------------

    def budget_bytes(self) -> int:
        """Return the per-chunk byte budget (``chunk_size_mb`` MiB)."""
        return self.get_int("chunk_size_mb", minimum=1) * 1024 * 1024

    def get_int(self, key: str, minimum: int = 0) -> int:
        """Return *key* as an integer no smaller than *minimum*.

        Raises:
            ConfigError: if the value is not a whole number or is too small.
        """
        value = self.get(key, DEFAULT_CONFIG.get(key))
        if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
            raise ConfigError(f"{key} must be an integer, got {value!r}")
        try:
            number = int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{key} must be an integer, got {value!r}") from exc
        if number < minimum:
            raise ConfigError(f"{key} must be at least {minimum}, got {number}")
        return number

    def get_float(self, key: str, minimum: float = 0.0) -> float:
        """Return *key* as a number of seconds no smaller than *minimum*.

        Raises:
            ConfigError: if the value is not a number or is too small.
        """
        value = self.get(key, DEFAULT_CONFIG.get(key))
        if isinstance(value, bool):
            raise ConfigError(f"{key} must be a number, got {value!r}")
        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"{key} must be a number, got {value!r}") from exc
        if math.isnan(number) or number < minimum:
            raise ConfigError(f"{key} must be at least {minimum:g}, got {value!r}")
        return number

    def media_root(self) -> Path:
        """Return the directory under which removable volumes are mounted."""
        configured = self.get("media_root")
        if configured:
            return Path(configured).expanduser()
        return Path("/media") / getpass.getuser()

    def transfer_engine(self) -> str:
        """Return the configured transfer engine name, validated."""
        name = str(self.get("transfer_engine", "auto")).lower()
        if name not in TRANSFER_ENGINES:
            logger.warning("Unknown transfer_engine %r, falling back to 'auto'", name)
            return "auto"
        return name
