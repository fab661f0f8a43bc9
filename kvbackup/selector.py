"""
Manifest resolution for kvbackup.

A manifest is a plain-text, ``.gitignore``-like list of glob patterns:

- lines beginning with ``#`` are comments and blank lines are skipped,
- lines beginning with ``!`` name files to leave out,
- every other line names files to back up.

Patterns are relative to the directory holding the manifest. A pattern that
matches a directory stands for every file below it.

Lines are applied strictly in file order. An exclusion only removes what
earlier lines added, and a later inclusion adds excluded files back in, so
``!a/skip.txt`` followed by ``a/*`` keeps ``a/skip.txt``.
"""

import glob
import logging
import os
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Set, Union

from kvbackup.errors import SelectionError

logger = logging.getLogger("kvbackup.selector")

COMMENT_MARKER = "#"
EXCLUDE_MARKER = "!"


class RuleKind(Enum):
    """Kinds of manifest line."""

    COMMENT = "comment"
    INCLUDE = "include"
    EXCLUDE = "exclude"


@dataclass
class Rule:
    """One classified manifest line."""

    kind: RuleKind
    pattern: str
    line_no: int


def parse_line(line: str, line_no: int) -> Rule:
    """Classify a raw manifest line."""
    line = line.rstrip("\r\n")
    if not line.strip() or line.startswith(COMMENT_MARKER):
        return Rule(RuleKind.COMMENT, line, line_no)
    if line.startswith(EXCLUDE_MARKER):
        pattern = line[len(EXCLUDE_MARKER) :]
        if not pattern.strip():
            return Rule(RuleKind.COMMENT, line, line_no)
        return Rule(RuleKind.EXCLUDE, pattern, line_no)
    return Rule(RuleKind.INCLUDE, line, line_no)


def check_pattern(pattern: str) -> None:
    """Raise ``SelectionError`` if *pattern* has an unterminated ``[`` class."""
    i = 0
    while i < len(pattern):
        if pattern[i] == "[":
            j = i + 1
            if j < len(pattern) and pattern[j] == "!":
                j += 1
            # A leading ']' is a literal member of the class
            if j < len(pattern) and pattern[j] == "]":
                j += 1
            end = pattern.find("]", j)
            if end < 0:
                raise SelectionError(f"malformed pattern {pattern!r}: unclosed '['")
            i = end + 1
        else:
            i += 1


def _raise_walk_error(error: OSError) -> None:
    raise SelectionError(f"error walking {error.filename}: {error}") from error


def walk_files(directory: str) -> List[str]:
    """Return every file below *directory*; directories are left out."""
    leaves = []
    for root, _, files in os.walk(directory, onerror=_raise_walk_error):
        for name in files:
            leaves.append(os.path.join(root, name))
    return leaves


def expand_matches(matches: Iterable[str]) -> List[str]:
    """
    Explode directory matches into their file leaves.

    Args:
        matches: Paths produced by a glob

    Returns:
        Normalized file paths; plain files are passed through untouched

    Raises:
        SelectionError: If a match cannot be stat'ed or walked
    """
    leaves: List[str] = []
    for path in matches:
        try:
            info = os.stat(path)
        except OSError as e:
            raise SelectionError(f"cannot read {path}: {e}") from e
        if stat.S_ISDIR(info.st_mode):
            leaves.extend(walk_files(path))
        else:
            leaves.append(path)
    return [os.path.normpath(leaf) for leaf in leaves]


@dataclass
class Manifest:
    """Ordered include/exclude rules anchored at a base directory."""

    base_dir: str
    rules: List[Rule] = field(default_factory=list)

    @classmethod
    def parse(cls, lines: Iterable[str], base_dir: Union[str, Path]) -> "Manifest":
        """Build a manifest from raw lines."""
        rules = [parse_line(line, n) for n, line in enumerate(lines, start=1)]
        return cls(base_dir=os.path.abspath(base_dir), rules=rules)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Manifest":
        """
        Read a manifest file.

        Patterns are anchored at the directory holding the file.

        Raises:
            SelectionError: If the file cannot be opened or decoded
        """
        path = os.path.abspath(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                lines = f.read().splitlines()
        except (OSError, UnicodeDecodeError) as e:
            raise SelectionError(f"error reading manifest {path}: {e}") from e
        return cls.parse(lines, os.path.dirname(path))

    def _glob(self, pattern: str) -> List[str]:
        check_pattern(pattern)
        full = os.path.join(self.base_dir, pattern)
        return sorted(glob.glob(full, include_hidden=True))

    def resolve(self) -> Set[str]:
        """
        Apply every rule in order and return the resulting path set.

        Returns:
            Absolute paths of the selected files

        Raises:
            SelectionError: On a malformed pattern or an unreadable match
        """
        files: Set[str] = set()
        for rule in self.rules:
            if rule.kind is RuleKind.COMMENT:
                continue
            try:
                leaves = expand_matches(self._glob(rule.pattern))
            except SelectionError as e:
                raise SelectionError(f"line {rule.line_no}: {e}") from e
            if rule.kind is RuleKind.EXCLUDE:
                files.difference_update(leaves)
            else:
                files.update(leaves)
            logger.debug(
                f"line {rule.line_no} ({rule.kind.value} {rule.pattern!r}): "
                f"{len(leaves)} matches, {len(files)} selected"
            )
        logger.info(f"Manifest selected {len(files)} files")
        return files


def resolve_manifest(path: Union[str, Path]) -> Set[str]:
    """Read the manifest at *path* and resolve it to a path set."""
    return Manifest.from_file(path).resolve()
