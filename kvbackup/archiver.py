"""
Backup pipeline for kvbackup.

Every selected path goes through the same steps: open it, stat it, compare
its modification time with the one recorded for it in the store, and only
when it is stale compress it and write it back. A failure in any step is
reported for that path alone; sibling tasks carry on.
"""

import logging
import math
import os
import struct
import zlib
from typing import Iterable, Optional

from kvbackup.codec import compress
from kvbackup.errors import CodecError, PerFileError, StoreError
from kvbackup.pool import WorkerPool
from kvbackup.report import FileResult, FileStatus, ResultCallback, RunReport
from kvbackup.store import BaseStore, Entry

logger = logging.getLogger("kvbackup.archiver")

DEFAULT_THRESHOLD = 1
DEFAULT_LEVEL = 9


class Archiver:
    """Writes stale files into a store."""

    def __init__(
        self,
        store: BaseStore,
        threshold: int = DEFAULT_THRESHOLD,
        level: int = DEFAULT_LEVEL,
    ):
        """
        Args:
            store: Store to read snapshots from and write them to
            threshold: A file is stale when it is more than this many seconds
                newer than its stored snapshot
            level: gzip compression level (0-9)
        """
        if not 0 <= level <= 9:
            raise ValueError(f"invalid compression level: {level}")
        if threshold < 0:
            raise ValueError(f"staleness threshold must not be negative: {threshold}")
        self.store = store
        self.threshold = threshold
        self.level = level

    def is_stale(self, stored: Optional[Entry], mtime: float) -> bool:
        """
        Decide whether a file needs to be written again.

        The stored time is floored to the second, so a change made within
        the same second as the stored snapshot may go unnoticed. An entry
        whose time cannot be read from either the column or the container
        header is always stale.
        """
        if stored is None:
            return True
        try:
            stored_mtime = stored.resolved_mtime()
        except CodecError as e:
            logger.debug(f"{stored.key}: unreadable stored time: {e}")
            return True
        age = mtime - stored_mtime
        return age > self.threshold

    def archive(self, path: str) -> FileResult:
        """Back up one file, returning its outcome instead of raising."""
        try:
            status = self._archive(path)
        except PerFileError as e:
            logger.warning(str(e))
            return FileResult(path, FileStatus.FAILED, error=e)
        except Exception as e:
            error = PerFileError(path, "unexpected error", e)
            logger.error(str(error), exc_info=True)
            return FileResult(path, FileStatus.FAILED, error=error)
        logger.debug(f"{path}: {status.value}")
        return FileResult(path, status)

    def _archive(self, path: str) -> FileStatus:
        try:
            f = open(path, "rb")
        except OSError as e:
            raise PerFileError(path, "error opening file", e) from e

        with f:
            try:
                info = os.fstat(f.fileno())
            except OSError as e:
                raise PerFileError(path, "error getting file info", e) from e

            try:
                stored = self.store.get(path)
            except StoreError as e:
                raise PerFileError(path, "error reading db file data", e) from e

            if not self.is_stale(stored, info.st_mtime):
                return FileStatus.UP_TO_DATE

            try:
                blob = compress(f, path, info.st_mtime, self.level)
            except (OSError, struct.error, zlib.error) as e:
                raise PerFileError(path, "error copying file contents", e) from e

        entry = Entry(
            key=path, mtime=math.floor(info.st_mtime), level=self.level, data=blob
        )
        try:
            self.store.put(entry)
        except StoreError as e:
            raise PerFileError(path, "error putting file in store", e) from e
        return FileStatus.UPDATED

    def _task(self, path: str, on_result: Optional[ResultCallback]) -> FileResult:
        result = self.archive(path)
        if on_result is not None:
            on_result(result)
        return result

    def run(
        self,
        paths: Iterable[str],
        pool: WorkerPool,
        on_result: Optional[ResultCallback] = None,
    ) -> RunReport:
        """
        Back up every path through *pool* and wait for all of them.

        Args:
            paths: Absolute file paths, typically a resolved manifest
            pool: Gate bounding the number of files processed at once
            on_result: Called from the worker thread as each file finishes

        Returns:
            Report covering every dispatched path
        """
        paths = sorted(paths)
        logger.info(f"Backing up {len(paths)} files with {pool.capacity} workers")
        for path in paths:
            pool.submit(self._task, path, on_result)
        report = RunReport(results=pool.join())
        logger.info(f"Backup finished: {report.summary()}")
        return report
