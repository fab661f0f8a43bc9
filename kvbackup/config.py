"""
Configuration file support for kvbackup.

Loads settings from ``~/.config/kvbackup/config.yaml`` (or
``$XDG_CONFIG_HOME/kvbackup/config.yaml``) and exposes them as a typed
dataclass that the CLI merges with command-line flags and environment
variables.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from kvbackup.archiver import DEFAULT_LEVEL, DEFAULT_THRESHOLD
from kvbackup.pool import DEFAULT_WORKERS
from kvbackup.restorer import DEFAULT_QUEUE_SIZE
from kvbackup.store.sqlite import DEFAULT_COLLECTION

logger = logging.getLogger("kvbackup.config")


def default_config_path() -> Path:
    """Return the default configuration file path.

    Uses ``$XDG_CONFIG_HOME/kvbackup/config.yaml`` when set, otherwise
    falls back to ``~/.config/kvbackup/config.yaml``.
    """
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "kvbackup" / "config.yaml"
    return Path.home() / ".config" / "kvbackup" / "config.yaml"


def _int_setting(data: Dict[str, Any], key: str, default: int) -> int:
    value = data.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        logger.warning("Ignoring non-integer %s in config: %r", key, value)
        return default
    return value


def _path_setting(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    return str(Path(str(value)).expanduser())


@dataclass
class BackupConfig:
    """Settings loaded from the YAML file, with built-in defaults."""

    db: Optional[str] = None
    manifest: Optional[str] = None
    output: Optional[str] = None
    collection: str = DEFAULT_COLLECTION
    workers: int = DEFAULT_WORKERS
    compress: int = DEFAULT_LEVEL
    maxage: int = DEFAULT_THRESHOLD
    queue_size: int = DEFAULT_QUEUE_SIZE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupConfig":
        """Construct a ``BackupConfig`` from a parsed YAML dictionary."""
        if not isinstance(data, dict):
            return cls()

        collection = data.get("collection", DEFAULT_COLLECTION)
        if not isinstance(collection, str):
            logger.warning("Ignoring non-string collection in config: %r", collection)
            collection = DEFAULT_COLLECTION

        return cls(
            db=_path_setting(data, "db"),
            manifest=_path_setting(data, "manifest"),
            output=_path_setting(data, "output"),
            collection=collection,
            workers=_int_setting(data, "workers", DEFAULT_WORKERS),
            compress=_int_setting(data, "compress", DEFAULT_LEVEL),
            maxage=_int_setting(data, "maxage", DEFAULT_THRESHOLD),
            queue_size=_int_setting(data, "queue_size", DEFAULT_QUEUE_SIZE),
        )

    @classmethod
    def from_file(cls, path: Path) -> "BackupConfig":
        """Read a YAML file and return a ``BackupConfig``.

        Returns the default config on any error.
        """
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f.read())
            if data is None:
                return cls()
            return cls.from_dict(data)
        except (IOError, yaml.YAMLError) as e:
            logger.error("Failed to load config from %s: %s", path, e)
            return cls()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "BackupConfig":
        """Main entry point: load config from *config_path* or the default location.

        Returns the default config if the file does not exist.
        """
        path = config_path or default_config_path()
        if not path.exists():
            return cls()
        return cls.from_file(path)
