import os
from collections.abc import Iterable, Iterator
from pathlib import Path

import pathspec

from jsimport.indexer.paths import normalize_path

WATCHED_SUFFIXES = ("js", "jsx", "json")

# Vendored package directories, never indexed regardless of configured excludes
DEPENDENCY_DIRS = frozenset({"node_modules", ".git"})


def has_watched_suffix(name: str, suffixes: Iterable[str] = WATCHED_SUFFIXES) -> bool:
    return any(name.endswith("." + suffix) for suffix in suffixes)


class ExcludeFilter:
    """Decides whether a normalized path is left out of the index."""

    def __init__(self, excludes: Iterable[str] = ()):
        self.patterns = list(excludes)
        self.spec = pathspec.PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_excluded(self, path: str) -> bool:
        if any(part in DEPENDENCY_DIRS for part in path.split("/")[:-1]):
            return True
        return bool(self.patterns) and self.spec.match_file(path)


def walk_files(directory: str | Path, suffixes: Iterable[str] = WATCHED_SUFFIXES) -> Iterator[Path]:
    """Yield every file below directory with a watched suffix."""
    suffixes = tuple(suffixes)
    for root, dirs, files in os.walk(directory):
        # Prune dependency directories first (optimization)
        dirs[:] = [d for d in dirs if d not in DEPENDENCY_DIRS]
        for file in files:
            if has_watched_suffix(file, suffixes):
                yield Path(root) / file


def mtime_ms(path: str | Path) -> int:
    return os.stat(path).st_mtime_ns // 1_000_000


def find_all_files(
    directory: str | Path,
    excludes: ExcludeFilter | Iterable[str] = (),
    suffixes: Iterable[str] = WATCHED_SUFFIXES,
) -> dict[str, int]:
    """Enumerate watched files under directory as {normalized path: mtime}."""
    if not isinstance(excludes, ExcludeFilter):
        excludes = ExcludeFilter(excludes)

    files: dict[str, int] = {}
    for full_path in walk_files(directory, suffixes):
        path = normalize_path(full_path, directory)
        if excludes.is_excluded(path):
            continue
        try:
            files[path] = mtime_ms(full_path)
        except FileNotFoundError:
            # Removed between listing and stat
            continue
    return files
