#!/usr/bin/env python3
"""
Tree Scanner for Kritiq Reviewer

Walks a folder depth-first (pre-order) and collects the files that pass
the PathFilter. Directory entries are visited in sorted name order so the
result is stable for a given tree; that order is also the order in which
files get reviewed and truncated.

Only an unreadable root is fatal. Anything below it that cannot be
stat'ed or listed is left out of the result.
"""

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from path_filter import PathFilter

logger = logging.getLogger(__name__)


class ScanError(OSError):
    """Raised when the scan root itself cannot be read."""
    pass


@dataclass
class FileCandidate:
    """A file selected for review. Content is read at review time."""
    path: Path
    size: int = 0
    content: Optional[str] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def extension(self) -> str:
        return self.path.suffix


class TreeScanner:
    """Collects eligible files below a root directory."""

    def __init__(
        self,
        path_filter: Optional[PathFilter] = None,
        skip_paths: Optional[Iterable[Path]] = None,
    ):
        """
        Args:
            path_filter: Name-based allow/block rules
            skip_paths: Directories never descended into, wherever they sit
                in the tree (backup and log folders of the reviewer itself)
        """
        self.path_filter = path_filter or PathFilter()
        self.skip_paths = [Path(p) for p in (skip_paths or [])]

    def _skipped_identities(self) -> Set[Tuple[int, int]]:
        identities = set()
        for path in self.skip_paths:
            try:
                st = os.stat(path)
            except OSError:
                # Not created yet
                continue
            identities.add((st.st_dev, st.st_ino))
        return identities

    def scan(self, root: Path) -> List[FileCandidate]:
        """
        Scan a directory tree.

        Args:
            root: Folder to scan

        Returns:
            Eligible files in traversal order

        Raises:
            ScanError: If the root cannot be listed
        """
        root = Path(root).absolute()
        try:
            entries = sorted(os.listdir(root))
            root_stat = os.stat(root)
        except OSError as e:
            raise ScanError(f"Cannot read folder {root}: {e.strerror or e}") from e

        found: List[FileCandidate] = []
        # Skipped folders count as already visited
        visited: Set[Tuple[int, int]] = self._skipped_identities()
        visited.add((root_stat.st_dev, root_stat.st_ino))
        self._scan_entries(root, entries, found, visited)
        logger.debug(f"Scan of {root} found {len(found)} eligible files")
        return found

    def _scan_directory(
        self,
        path: Path,
        found: List[FileCandidate],
        visited: Set[Tuple[int, int]],
    ) -> None:
        try:
            entries = sorted(os.listdir(path))
        except OSError as e:
            logger.debug(f"Skipping unreadable directory {path}: {e}")
            return
        self._scan_entries(path, entries, found, visited)

    def _scan_entries(
        self,
        path: Path,
        entries: List[str],
        found: List[FileCandidate],
        visited: Set[Tuple[int, int]],
    ) -> None:
        for name in entries:
            full_path = path / name
            try:
                st = os.stat(full_path)
            except OSError:
                # Broken link or no permission
                continue

            if stat.S_ISDIR(st.st_mode):
                if not self.path_filter.is_traversable(name):
                    continue
                key = (st.st_dev, st.st_ino)
                if key in visited:
                    continue
                visited.add(key)
                self._scan_directory(full_path, found, visited)
            elif self.path_filter.is_eligible(name):
                found.append(FileCandidate(path=full_path, size=st.st_size))
