import os
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from jsimport.indexer.file_index import FileIndex, FileRecord
from jsimport.indexer.paths import is_under, normalize_path
from jsimport.indexer.scan import (
    WATCHED_SUFFIXES,
    ExcludeFilter,
    find_all_files,
    has_watched_suffix,
    mtime_ms,
    walk_files,
)

DEFAULT_POLL_INTERVAL = 30.0
PROJECT_MARKERS = (".watchmanconfig", ".git", ".hg")


class ProviderUnavailable(Exception):
    """The push notification provider could not be set up."""


class SubscriptionLost(Exception):
    """An active push subscription stopped delivering events."""


class WatcherState(str, Enum):
    UNINITIALIZED = "uninitialized"
    TRYING_PUSH = "trying_push"
    PUSH_ACTIVE = "push_active"
    POLLING = "polling"
    STOPPED = "stopped"


class FileChange(BaseModel):
    """One entry of a push batch; name is relative to the watched directory."""

    name: str
    exists: bool
    mtime: int | None = None
    # A removed directory stands for every indexed file below it
    directory: bool = False


@dataclass(frozen=True)
class WatchRoot:
    root: str
    relative_path: str = ""

    @property
    def directory(self) -> Path:
        return Path(self.root) / self.relative_path


BatchCallback = Callable[[list[FileChange]], None]
ChangeCallback = Callable[[list[FileRecord], list[str]], Any]


class Subscription(Protocol):
    def is_active(self) -> bool: ...

    def cancel(self) -> None: ...


class PushProvider(Protocol):
    def watch(self, directory: str) -> WatchRoot: ...

    def subscribe(
        self, watch_root: WatchRoot, suffixes: Sequence[str], on_batch: BatchCallback
    ) -> Subscription: ...


# =============================================================================
# watchdog push provider
# =============================================================================


class BatchingHandler(FileSystemEventHandler):
    """Turns watchdog events into FileChange batches.

    Existence and mtime are read when the batch is built, so a batch always
    describes the file as it is on disk at that moment.
    """

    def __init__(self, directory: Path, suffixes: Sequence[str], on_batch: BatchCallback):
        self.directory = directory
        self.suffixes = tuple(suffixes)
        self.on_batch = on_batch
        self.lock = threading.Lock()

    def _change(self, file_path: str) -> FileChange:
        name = normalize_path(file_path, self.directory)
        try:
            return FileChange(name=name, exists=True, mtime=mtime_ms(file_path))
        except FileNotFoundError:
            return FileChange(name=name, exists=False)

    def _directory_changes(self, directory: str) -> list[FileChange]:
        if not os.path.isdir(directory):
            # Deleted or moved out of the tree; the watcher expands it against its index
            name = normalize_path(directory, self.directory)
            return [FileChange(name=name, exists=False, directory=True)]
        return [
            change
            for change in map(self._change, walk_files(directory, self.suffixes))
            if change.exists
        ]

    def _emit(self, *paths: bytes | str, directory: bool = False) -> None:
        with self.lock:
            changes: list[FileChange] = []
            for path in map(os.fsdecode, paths):
                if directory:
                    changes.extend(self._directory_changes(path))
                elif has_watched_suffix(path, self.suffixes):
                    changes.append(self._change(path))
            if changes:
                self.on_batch(changes)

    def deliver_initial(self) -> None:
        """Report every existing watched file as one batch."""
        self._emit(self.directory, directory=True)

    def on_created(self, event):
        self._emit(event.src_path, directory=event.is_directory)

    def on_modified(self, event):
        if not event.is_directory:
            self._emit(event.src_path)

    def on_deleted(self, event):
        self._emit(event.src_path, directory=event.is_directory)

    def on_moved(self, event):
        self._emit(event.src_path, event.dest_path, directory=event.is_directory)


class ObserverSubscription:
    def __init__(self, observer: Any):
        self.observer = observer

    def is_active(self) -> bool:
        return self.observer.is_alive()

    def cancel(self) -> None:
        self.observer.stop()
        self.observer.join()


class WatchdogProvider:
    """Push notifications from a watchdog observer (inotify, FSEvents, ...)."""

    def watch(self, directory: str) -> WatchRoot:
        path = Path(directory).resolve()
        if not path.is_dir():
            raise ProviderUnavailable(f"Not a directory: {directory}")

        # Traverse up for project markers
        root = path
        for parent in [path, *list(path.parents)]:
            if any((parent / marker).exists() for marker in PROJECT_MARKERS):
                root = parent
                break

        relative_path = path.relative_to(root).as_posix()
        return WatchRoot(root=str(root), relative_path="" if relative_path == "." else relative_path)

    def subscribe(
        self, watch_root: WatchRoot, suffixes: Sequence[str], on_batch: BatchCallback
    ) -> ObserverSubscription:
        directory = watch_root.directory
        handler = BatchingHandler(directory, suffixes, on_batch)
        observer = Observer()
        try:
            observer.schedule(handler, str(directory), recursive=True)
            observer.start()
        except OSError as e:
            raise ProviderUnavailable(f"Could not start observer on {directory}: {e}") from e

        subscription = ObserverSubscription(observer)
        try:
            handler.deliver_initial()
        except BaseException:
            subscription.cancel()
            raise
        return subscription


# =============================================================================
# Watcher
# =============================================================================


class Watcher:
    """Keeps a FileIndex in sync with the working directory.

    ``initialize()`` tries the push provider first and falls back to polling
    when it is unavailable. The choice is made once; a push subscription that
    drops later is reported by ``check_subscription()`` rather than retried.
    """

    def __init__(
        self,
        working_directory: str | Path = ".",
        excludes: Iterable[str] = (),
        provider: PushProvider | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        on_change: ChangeCallback | None = None,
        verbose: bool = True,
    ):
        self.working_directory = Path(working_directory).resolve()
        self.excludes = ExcludeFilter(excludes)
        self.provider = provider if provider is not None else WatchdogProvider()
        self.poll_interval = poll_interval
        self.on_change = on_change
        self.verbose = verbose

        self.index = FileIndex(self.working_directory)
        self.state = WatcherState.UNINITIALIZED

        self._watch_root: WatchRoot | None = None
        self._subscription: Subscription | None = None
        self._known: dict[str, int] = {}
        self._poll_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._poll_thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, config: Any, working_directory: str | Path = ".", **kwargs: Any) -> "Watcher":
        return cls(
            working_directory,
            excludes=config.excludes,
            poll_interval=config.poll_interval,
            **kwargs,
        )

    def __enter__(self) -> "Watcher":
        self.initialize()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def _log(self, message: str) -> None:
        if self.verbose:
            print(message)

    def _notify(self, added: list[FileRecord], removed: list[str]) -> None:
        if self.on_change:
            try:
                self.on_change(added, removed)
            except Exception as e:
                print(f"Error in watcher callback: {e}")

    def _apply(self, added: list[FileRecord], removed: list[str]) -> None:
        if not added and not removed:
            return
        with self.index.batch() as batch:
            if added:
                batch.upsert(added)
            if removed:
                batch.remove(removed)
        self._notify(added, removed)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> WatcherState:
        if self.state is not WatcherState.UNINITIALIZED:
            raise RuntimeError(f"Watcher already initialized ({self.state.value})")

        self.state = WatcherState.TRYING_PUSH
        try:
            self._start_push()
        except (ProviderUnavailable, OSError) as e:
            self._log(f"Couldn't initialize push watcher ({e}). Falling back to polling.")
            self._start_polling()
            self._log(f"jsimport watcher polling {self.working_directory} every {self.poll_interval}s")
        else:
            self._log(f"jsimport watcher started on {self.working_directory}")
        return self.state

    def _start_push(self) -> None:
        self._watch_root = self.provider.watch(str(self.working_directory))
        self._subscription = self.provider.subscribe(
            self._watch_root, WATCHED_SUFFIXES, self._on_batch
        )
        self.state = WatcherState.PUSH_ACTIVE

    def _start_polling(self) -> None:
        self.state = WatcherState.POLLING
        # A failed push attempt may already have delivered files
        self._known = dict(self.index.snapshot())
        self.poll()
        self._poll_thread = threading.Thread(
            target=self._poll_loop, name="jsimport-poll", daemon=True
        )
        self._poll_thread.start()

    def check_subscription(self) -> None:
        """Raise SubscriptionLost if the push subscription has dropped."""
        if self.state is WatcherState.PUSH_ACTIVE and not (
            self._subscription is not None and self._subscription.is_active()
        ):
            raise SubscriptionLost(
                f"Push subscription for {self.working_directory} is no longer active"
            )

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._stop_event.set()
        if self._poll_thread is not None:
            self._poll_thread.join()
            self._poll_thread = None
        self.state = WatcherState.STOPPED

    # -------------------------------------------------------------------------
    # Push mode
    # -------------------------------------------------------------------------

    def _on_batch(self, changes: list[FileChange]) -> None:
        base = self._watch_root.directory if self._watch_root else self.working_directory
        added: list[FileRecord] = []
        removed: list[str] = []
        for change in changes:
            path = normalize_path(base / change.name, self.working_directory)
            if change.directory:
                if not change.exists:
                    prefix = "" if path == "." else path
                    removed.extend(p for p in self.index.snapshot() if is_under(p, prefix))
                continue
            if self.excludes.is_excluded(path):
                continue
            if change.exists:
                added.append(FileRecord(path=path, mtime=change.mtime or 0))
            else:
                removed.append(path)
        self._apply(added, removed)

    # -------------------------------------------------------------------------
    # Polling mode
    # -------------------------------------------------------------------------

    def poll(self) -> tuple[list[FileRecord], list[str]]:
        """Enumerate the working directory once and apply the difference."""
        with self._poll_lock:
            files = find_all_files(self.working_directory, self.excludes)
            added = [
                FileRecord(path=path, mtime=mtime)
                for path, mtime in files.items()
                if self._known.get(path) != mtime
            ]
            removed = [path for path in self._known if path not in files]
            self._apply(added, removed)
            self._known = files
        return added, removed

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            try:
                self.poll()
            except OSError as e:
                self._log(f"Warning: Polling {self.working_directory} failed: {e}")
