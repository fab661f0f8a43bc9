"""
Bounded worker pool.

``WorkerPool`` is a counting admission gate of fixed capacity in front of a
thread pool. A slot is taken before a task is handed to a worker and given
back when the task ends, whatever the outcome, so no more than ``capacity``
file handles or store transactions are ever in flight. ``join`` is the
completion barrier the drivers wait on before reporting a run as done.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List

logger = logging.getLogger("kvbackup.pool")

DEFAULT_WORKERS = 20


class WorkerPool:
    """Counting semaphore plus thread pool plus join barrier."""

    def __init__(self, capacity: int = DEFAULT_WORKERS, name: str = "kvbackup"):
        if capacity < 1:
            raise ValueError(f"worker pool capacity must be at least 1: {capacity}")
        self.capacity = capacity
        self._slots = threading.BoundedSemaphore(capacity)
        self._executor = ThreadPoolExecutor(
            max_workers=capacity, thread_name_prefix=name
        )
        self._futures: List[Future] = []

    def acquire(self) -> None:
        """Block until a slot is free, then take it."""
        self._slots.acquire()

    def release(self) -> None:
        """Give a slot back."""
        self._slots.release()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """
        Run ``fn(*args, **kwargs)`` on a worker once a slot is free.

        The slot is acquired in the calling thread, so a producer that
        submits faster than the workers finish is held back here.

        Returns:
            The future of the task
        """
        self.acquire()
        try:
            future = self._executor.submit(self._run, fn, args, kwargs)
        except BaseException:
            self.release()
            raise
        self._futures.append(future)
        return future

    def _run(self, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        try:
            return fn(*args, **kwargs)
        finally:
            self.release()

    def join(self) -> List[Any]:
        """
        Wait for every task submitted so far.

        Returns:
            Task results in submission order

        Raises:
            Exception: The first exception raised by a task, after all tasks
                have finished
        """
        futures, self._futures = self._futures, []
        wait(futures)
        logger.debug(f"Joined {len(futures)} tasks")
        return [future.result() for future in futures]

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "WorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()
