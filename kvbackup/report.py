"""
Per-file outcomes and run summaries.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from kvbackup.errors import PerFileError


class FileStatus(Enum):
    """Outcome of processing one file."""

    UPDATED = "updated"
    UP_TO_DATE = "up to date"
    RESTORED = "restored"
    FAILED = "failed"


@dataclass
class FileResult:
    """What happened to a single path."""

    path: str
    status: FileStatus
    target: Optional[str] = None
    error: Optional[PerFileError] = None

    @property
    def ok(self) -> bool:
        return self.status is not FileStatus.FAILED


ResultCallback = Callable[[FileResult], None]


@dataclass
class RunReport:
    """Aggregate of every file result from one backup or restore run."""

    results: List[FileResult] = field(default_factory=list)

    def count(self, status: FileStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def failures(self) -> List[FileResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        """True when no file failed."""
        return not self.failures

    def summary(self) -> str:
        parts = [
            f"{self.count(status)} {status.value}"
            for status in FileStatus
            if self.count(status)
        ]
        return ", ".join(parts) if parts else "no files"
