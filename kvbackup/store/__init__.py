"""
Store package for kvbackup.

This module provides the entry record and the base class for stores.
A store is a single named collection inside an embedded transactional
key-value engine; every operation runs in its own transaction.
"""

import abc
from dataclasses import dataclass
from typing import Callable, List, Optional

from kvbackup.codec import read_header


@dataclass
class Entry:
    """A stored file: its absolute source path and compressed content."""

    key: str

    # Whole seconds; None when the stored column is empty or not an integer
    mtime: Optional[int]
    level: int

    # gzip container of the original bytes
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def resolved_mtime(self) -> int:
        """
        Return the stored modification time.

        Falls back to the time recorded in the container header when the
        column holds no usable value.

        Raises:
            CodecError: If the column is empty and the header is unreadable
        """
        if self.mtime is not None:
            return self.mtime
        return read_header(self.data).mtime


class BaseStore(abc.ABC):
    """Base class for entry stores."""

    @abc.abstractmethod
    def ensure_collection(self) -> None:
        """Create the collection if it does not exist yet."""
        pass

    @abc.abstractmethod
    def collection_exists(self) -> bool:
        """Return True when the collection has been created."""
        pass

    @abc.abstractmethod
    def get(self, key: str) -> Optional[Entry]:
        """
        Read one entry.

        Args:
            key: Absolute source path

        Returns:
            The stored entry, or None when the key (or the collection) is absent
        """
        pass

    @abc.abstractmethod
    def put(self, entry: Entry) -> None:
        """Write *entry*, replacing any prior value for its key."""
        pass

    @abc.abstractmethod
    def for_each(self, visit: Callable[[Entry], None]) -> None:
        """
        Call *visit* for every entry inside a single read transaction.

        No ordering is guaranteed. An absent collection yields no visits.
        """
        pass

    def keys(self) -> List[str]:
        """List every stored key."""
        found: List[str] = []
        self.for_each(lambda entry: found.append(entry.key))
        return found

    def count(self) -> int:
        """Return the number of stored entries."""
        return len(self.keys())

    def close(self) -> None:
        pass

    def __enter__(self) -> "BaseStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
