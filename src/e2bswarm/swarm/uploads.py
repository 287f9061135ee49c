"""
Selection of local files to upload into a sandbox workspace.
"""

import os
import re
from pathlib import Path

MAX_UPLOAD_SIZE = 1024 * 1024  # files of 1 MiB or more are skipped

DEFAULT_EXCLUDE = [
    "node_modules",
    ".git",
    ".next",
    ".turbo",
    "dist",
    "build",
    ".cache",
    "*.log",
    ".DS_Store",
    ".env",
    ".env.local",
    ".env*.local",
]


def _wildcard(pattern: str) -> re.Pattern:
    """Compile a pattern where only `*` is special."""
    return re.compile("^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$")


def should_exclude(relative_path: str, name: str, patterns: list[str]) -> bool:
    """True if the entry matches an exclude pattern by name, path, or directory prefix."""
    for pattern in patterns:
        if name == pattern or relative_path == pattern:
            return True
        if "*" in pattern:
            regex = _wildcard(pattern)
            if regex.match(name) or regex.match(relative_path):
                return True
        if relative_path.startswith(pattern + "/"):
            return True
    return False


def matches_any(relative_path: str, patterns: list[str]) -> bool:
    """True if the path matches a wildcard pattern or starts with a plain one."""
    for pattern in patterns:
        if "*" in pattern:
            if _wildcard(pattern).match(relative_path):
                return True
        elif relative_path.startswith(pattern):
            return True
    return False


def collect_files(
    root: Path,
    exclude: list[str] | None = None,
    include: list[str] | None = None,
) -> list[Path]:
    """
    Walk root and return the files to upload.

    Args:
        root: Local directory to walk
        exclude: Patterns added to DEFAULT_EXCLUDE
        include: If given, only files matching one of these are kept;
            directories are still descended into

    Returns:
        Absolute file paths in walk order
    """
    patterns = DEFAULT_EXCLUDE + list(exclude or [])
    files: list[Path] = []

    for current, dirnames, filenames in os.walk(root):
        current_path = Path(current)
        rel_dir = current_path.relative_to(root)

        kept_dirs = []
        for dirname in sorted(dirnames):
            rel = (rel_dir / dirname).as_posix()
            if not should_exclude(rel, dirname, patterns):
                kept_dirs.append(dirname)
        dirnames[:] = kept_dirs

        for filename in sorted(filenames):
            rel = (rel_dir / filename).as_posix()
            if should_exclude(rel, filename, patterns):
                continue
            if include and not matches_any(rel, include):
                continue

            path = current_path / filename
            if not path.is_file():
                continue
            if path.stat().st_size >= MAX_UPLOAD_SIZE:
                continue
            files.append(path)

    return files
