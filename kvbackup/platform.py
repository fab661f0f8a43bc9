"""
Platform helpers for kvbackup.

Centralizes the Windows vs POSIX differences so the rest of the codebase
can call simple functions instead of scattering ``sys.platform`` checks.
"""

import os
import sys
from pathlib import Path


def is_windows() -> bool:
    """Return True when running on Windows."""
    return sys.platform.startswith("win")


def home_dir() -> Path:
    """Return the user's home directory."""
    if is_windows():
        home = os.environ.get("HOMEDRIVE", "") + os.environ.get("HOMEPATH", "")
        if not home:
            home = os.environ.get("USERPROFILE", "")
        if home:
            return Path(home)
    return Path.home()


def default_manifest_path() -> Path:
    """Return the default manifest location, ``~/.backup``."""
    return home_dir() / ".backup"


def restore_path(output_dir: str, key: str) -> str:
    """Map a stored absolute key onto a path below *output_dir*.

    ``/home/me/notes.txt`` restored into ``/tmp/out`` becomes
    ``/tmp/out/home/me/notes.txt``. On Windows the drive colon is dropped so
    ``C:\\data\\a.txt`` becomes ``<output_dir>\\C\\data\\a.txt``.
    """
    drive, rest = os.path.splitdrive(key)
    relative = rest.lstrip("\\/")
    if drive:
        relative = os.path.join(drive.rstrip(":").lstrip("\\/"), relative)
    return os.path.join(output_dir, relative)
