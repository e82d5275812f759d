import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from types import MappingProxyType

from pydantic import BaseModel


class FileRecord(BaseModel):
    path: str
    mtime: int


class IndexBatch:
    """Pending changes to a FileIndex, committed together when the batch closes."""

    def __init__(self, files: dict[str, int]):
        self._files = files

    def upsert(self, records: Iterable[FileRecord]) -> None:
        for record in records:
            self._files[record.path] = record.mtime

    def remove(self, paths: Iterable[str]) -> None:
        for path in paths:
            self._files.pop(path, None)


class FileIndex:
    """Mapping of normalized path to last known mtime for one working directory.

    Writers go through ``batch()`` (or the ``upsert``/``remove`` shortcuts, one
    batch each). Readers take ``snapshot()``, which never blocks and always
    returns a complete state: each batch is built on a copy and published with
    a single reference swap.
    """

    def __init__(self, working_directory: str | Path = "."):
        self.working_directory = Path(working_directory).resolve()
        self._lock = threading.Lock()
        self._files: Mapping[str, int] = MappingProxyType({})

    @contextmanager
    def batch(self) -> Iterator[IndexBatch]:
        with self._lock:
            working = dict(self._files)
            yield IndexBatch(working)
            self._files = MappingProxyType(working)

    def upsert(self, records: Iterable[FileRecord]) -> None:
        """Insert or update records."""
        with self.batch() as batch:
            batch.upsert(records)

    def remove(self, paths: Iterable[str]) -> None:
        """Remove paths; unknown paths are ignored."""
        with self.batch() as batch:
            batch.remove(paths)

    def snapshot(self) -> Mapping[str, int]:
        return self._files

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, path: object) -> bool:
        return path in self._files
