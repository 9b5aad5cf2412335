#!/usr/bin/env python3
"""
Path Filter for Kritiq Reviewer

Decides which files are worth sending to the model and which directories
the tree walk may descend into. Everything here is a closed, exact-match
set; there is no globbing.
"""

import os
from typing import Iterable, Optional, Set


ALLOWED_EXTENSIONS = {
    '.js', '.jsx', '.ts', '.tsx',
    '.html', '.css',
    '.py',
    '.java',
    '.c', '.cpp', '.h',
}

# Project metadata that must never be rewritten, whatever its extension
BLOCKED_FILES = {
    'package.json',
    'package-lock.json',
    'yarn.lock',
    'pnpm-lock.yaml',
    '.env',
    '.env.local',
    '.env.development',
    '.env.production',
    'README.md',
    'LICENSE',
    '.gitignore',
    'tsconfig.json',
}

# Generated, minified and test artifacts
IGNORED_SUFFIXES = ('.min.js', '.test.js', '.spec.js', '.d.ts', '.map')

BLOCKED_DIRS = {
    'node_modules',
    '.git',
    'dist',
    'build',
    '.vscode',
    'coverage',
    'bin',
    'obj',
    'venv',
    '__pycache__',
}

ASSET_DIRS = {'public', 'assets'}


class PathFilter:
    """
    Eligibility rules for the tree scanner.

    A file is eligible iff its extension is allowed, its name is not a
    blocked project file and it does not end with an ignored suffix.
    Extension matching is case-sensitive on the raw extension.
    """

    def __init__(
        self,
        block_asset_dirs: bool = False,
        extra_blocked_dirs: Optional[Iterable[str]] = None,
    ):
        self.allowed_extensions: Set[str] = set(ALLOWED_EXTENSIONS)
        self.blocked_files: Set[str] = set(BLOCKED_FILES)
        self.ignored_suffixes = IGNORED_SUFFIXES
        self.blocked_dirs: Set[str] = set(BLOCKED_DIRS)
        if block_asset_dirs:
            self.blocked_dirs |= ASSET_DIRS
        if extra_blocked_dirs:
            self.blocked_dirs |= set(extra_blocked_dirs)

    def is_eligible(self, name: str) -> bool:
        """Check if a file with this base name should be reviewed."""
        ext = os.path.splitext(name)[1]
        if ext not in self.allowed_extensions:
            return False
        if name in self.blocked_files:
            return False
        return not name.endswith(self.ignored_suffixes)

    def is_traversable(self, name: str) -> bool:
        """Check if the scanner may descend into a directory with this name."""
        return name not in self.blocked_dirs


def create_filter_from_config(config_dict: dict) -> PathFilter:
    """Build a PathFilter from the 'scan' section of the configuration."""
    scan_config = config_dict.get('scan') or {}
    return PathFilter(
        block_asset_dirs=bool(scan_config.get('block_asset_dirs', False)),
        extra_blocked_dirs=scan_config.get('extra_blocked_dirs') or None,
    )
