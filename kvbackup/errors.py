"""
Error taxonomy for kvbackup.

Fatal errors (``SetupError``, ``SelectionError``, ``StoreError``) abort a run
before any file task is dispatched. ``PerFileError`` is scoped to a single
path and never escalates past the task that raised it.
"""

from typing import Optional


class KvBackupError(Exception):
    """Base class for all kvbackup errors."""


class SetupError(KvBackupError):
    """Invalid flags, missing manifest, unusable output directory."""


class SelectionError(KvBackupError):
    """The manifest could not be read or one of its patterns is unusable."""


class StoreError(KvBackupError):
    """The embedded store could not be opened, read or written."""


class CodecError(KvBackupError):
    """A stored container could not be decoded."""


class PerFileError(KvBackupError):
    """A failure confined to one path during backup or restore."""

    def __init__(self, path: str, reason: str, cause: Optional[BaseException] = None):
        self.path = path
        self.reason = reason
        self.cause = cause
        message = f"{path}: {reason}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
