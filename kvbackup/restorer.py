"""
Restore pipeline for kvbackup.

Every entry in the store is decompressed and written below an output
directory, keeping its absolute source path as the relative layout:
``/home/me/notes.txt`` restored into ``/tmp/out`` lands at
``/tmp/out/home/me/notes.txt``. One entry failing does not stop the rest.
"""

import logging
import os
import queue
import threading
from pathlib import Path
from typing import List, Optional, Union

from kvbackup.codec import decompress
from kvbackup.errors import CodecError, PerFileError, SetupError
from kvbackup.platform import restore_path
from kvbackup.pool import WorkerPool
from kvbackup.report import FileResult, FileStatus, ResultCallback, RunReport
from kvbackup.store import BaseStore, Entry

logger = logging.getLogger("kvbackup.restorer")

DEFAULT_QUEUE_SIZE = 64

# Marks the end of the store scan on the hand-off queue
_DONE = object()


class Restorer:
    """Writes stored entries back to disk."""

    def __init__(self, store: BaseStore, output_dir: Union[str, Path]):
        """
        Args:
            store: Store to read entries from
            output_dir: Existing directory to restore into

        Raises:
            SetupError: If *output_dir* is missing or not a directory
        """
        output_dir = os.path.abspath(output_dir)
        if not os.path.exists(output_dir):
            raise SetupError(f"output directory does not exist: {output_dir}")
        if not os.path.isdir(output_dir):
            raise SetupError(f"output path is not a directory: {output_dir}")
        self.store = store
        self.output_dir = output_dir

    def target_for(self, key: str) -> str:
        return restore_path(self.output_dir, key)

    def _failed(self, key: str, error: PerFileError) -> FileResult:
        logger.warning(str(error))
        return FileResult(key, FileStatus.FAILED, error=error)

    def _unexpected(self, key: str, cause: Exception) -> FileResult:
        error = PerFileError(key, "unexpected error", cause)
        logger.error(str(error), exc_info=True)
        return FileResult(key, FileStatus.FAILED, error=error)

    def _decompress(self, entry: Entry) -> bytes:
        try:
            return decompress(entry.data)
        except CodecError as e:
            raise PerFileError(entry.key, "error decompressing entry", e) from e

    def _write(self, entry: Entry, data: bytes) -> FileResult:
        target = self.target_for(entry.key)
        try:
            mtime = entry.resolved_mtime()
        except CodecError as e:
            raise PerFileError(entry.key, "error reading stored time", e) from e
        try:
            os.makedirs(os.path.dirname(target), exist_ok=True)
        except OSError as e:
            raise PerFileError(entry.key, "error creating directory", e) from e
        try:
            with open(target, "wb") as w:
                w.write(data)
            os.utime(target, (mtime, mtime))
        except OSError as e:
            raise PerFileError(entry.key, f"error writing {target}", e) from e
        logger.debug(f"{entry.key} -> {target}")
        return FileResult(entry.key, FileStatus.RESTORED, target=target)

    def restore_entry(self, entry: Entry) -> FileResult:
        """Restore one entry, returning its outcome instead of raising."""
        try:
            return self._write(entry, self._decompress(entry))
        except PerFileError as e:
            return self._failed(entry.key, e)
        except Exception as e:
            return self._unexpected(entry.key, e)

    def _restore_task(
        self, entry: Entry, on_result: Optional[ResultCallback]
    ) -> FileResult:
        result = self.restore_entry(entry)
        if on_result is not None:
            on_result(result)
        return result

    def run(
        self, pool: WorkerPool, on_result: Optional[ResultCallback] = None
    ) -> RunReport:
        """
        Restore every entry, one pool task per entry.

        The scan blocks whenever the pool is full, so at most
        ``pool.capacity`` entries are held in memory at once.

        Raises:
            StoreError: If the store cannot be scanned
        """
        logger.info(f"Restoring entries into {self.output_dir}")
        try:
            self.store.for_each(
                lambda entry: pool.submit(self._restore_task, entry, on_result)
            )
        finally:
            results = pool.join()
        report = RunReport(results=results)
        logger.info(f"Restore finished: {report.summary()}")
        return report

    def _write_task(
        self, entry: Entry, data: bytes, on_result: Optional[ResultCallback]
    ) -> FileResult:
        try:
            result = self._write(entry, data)
        except PerFileError as e:
            result = self._failed(entry.key, e)
        except Exception as e:
            result = self._unexpected(entry.key, e)
        if on_result is not None:
            on_result(result)
        return result

    def _decompress_task(
        self,
        entry: Entry,
        write_pool: WorkerPool,
        on_result: Optional[ResultCallback],
    ) -> Optional[FileResult]:
        try:
            data = self._decompress(entry)
        except PerFileError as e:
            result = self._failed(entry.key, e)
        except Exception as e:
            result = self._unexpected(entry.key, e)
        else:
            write_pool.submit(self._write_task, entry, data, on_result)
            return None
        if on_result is not None:
            on_result(result)
        return result

    def run_streaming(
        self,
        decompress_pool: WorkerPool,
        write_pool: WorkerPool,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        on_result: Optional[ResultCallback] = None,
    ) -> RunReport:
        """
        Restore every entry with the scan, decompression and disk writes
        decoupled.

        A scanner thread pushes entries onto a bounded queue. Each entry is
        decompressed under *decompress_pool* and then written under
        *write_pool*, so the two stages are bounded independently. The files
        written are the same as with :meth:`run`.

        Raises:
            StoreError: If the store cannot be scanned
        """
        if queue_size < 1:
            raise ValueError(f"queue size must be at least 1: {queue_size}")

        handoff: "queue.Queue" = queue.Queue(maxsize=queue_size)
        scan_errors: List[BaseException] = []

        def scan() -> None:
            try:
                self.store.for_each(handoff.put)
            except BaseException as e:
                scan_errors.append(e)
            finally:
                handoff.put(_DONE)

        logger.info(
            f"Streaming restore into {self.output_dir} "
            f"(queue {queue_size}, {decompress_pool.capacity} decompress, "
            f"{write_pool.capacity} write workers)"
        )
        scanner = threading.Thread(target=scan, name="kvbackup-scan", daemon=True)
        scanner.start()
        while True:
            entry = handoff.get()
            if entry is _DONE:
                break
            decompress_pool.submit(self._decompress_task, entry, write_pool, on_result)
        scanner.join()

        failed = [r for r in decompress_pool.join() if r is not None]
        results = failed + write_pool.join()
        if scan_errors:
            raise scan_errors[0]

        report = RunReport(results=results)
        logger.info(f"Restore finished: {report.summary()}")
        return report
