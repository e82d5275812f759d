import os
import shutil
import time

import pytest
from watchdog.events import DirCreatedEvent, DirDeletedEvent, DirMovedEvent

import jsimport.indexer.watcher as watcher_module
from jsimport.config import ImportConfig
from jsimport.indexer.file_index import IndexBatch
from jsimport.indexer.scan import WATCHED_SUFFIXES, find_all_files
from jsimport.indexer.watcher import (
    BatchingHandler,
    FileChange,
    ProviderUnavailable,
    SubscriptionLost,
    WatchdogProvider,
    Watcher,
    WatcherState,
    WatchRoot,
)


class FakeSubscription:
    def __init__(self):
        self.active = True
        self.cancelled = False

    def is_active(self):
        return self.active

    def cancel(self):
        self.cancelled = True
        self.active = False


class FakeProvider:
    """In-memory push provider; tests deliver batches with send()."""

    def __init__(self, fail=False):
        self.fail = fail
        self.on_batch = None
        self.subscription = None
        self.suffixes = None

    def watch(self, directory):
        if self.fail:
            raise ProviderUnavailable("provider not running")
        return WatchRoot(root=directory)

    def subscribe(self, watch_root, suffixes, on_batch):
        self.suffixes = tuple(suffixes)
        self.on_batch = on_batch
        self.subscription = FakeSubscription()
        return self.subscription

    def send(self, *changes):
        self.on_batch(list(changes))


def _write(root, relative, content="module.exports = {};"):
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


@pytest.fixture
def project(tmp_path):
    _write(tmp_path, "lib/foo.js")
    _write(tmp_path, "lib/bar-baz/index.jsx")
    _write(tmp_path, "lib/__mocks__/foo.js")
    _write(tmp_path, "node_modules/react/index.js")
    _write(tmp_path, "notes.txt", "not indexed")
    return tmp_path


# =============================================================================
# Push mode
# =============================================================================


class TestPushMode:
    def test_initialize_subscribes(self, tmp_path):
        provider = FakeProvider()
        watcher = Watcher(tmp_path, provider=provider, verbose=False)

        assert watcher.initialize() is WatcherState.PUSH_ACTIVE
        assert provider.suffixes == ("js", "jsx", "json")

    def test_batches_update_index(self, tmp_path):
        provider = FakeProvider()
        watcher = Watcher(tmp_path, excludes=["**/__mocks__/**"], provider=provider, verbose=False)
        watcher.initialize()

        provider.send(
            FileChange(name="lib/foo.js", exists=True, mtime=5),
            FileChange(name="lib/bar.js", exists=True, mtime=6),
            FileChange(name="node_modules/react/index.js", exists=True, mtime=1),
            FileChange(name="lib/__mocks__/foo.js", exists=True, mtime=1),
        )
        assert dict(watcher.index.snapshot()) == {"lib/foo.js": 5, "lib/bar.js": 6}

        provider.send(
            FileChange(name="lib/foo.js", exists=True, mtime=9),
            FileChange(name="lib/bar.js", exists=False),
        )
        assert dict(watcher.index.snapshot()) == {"lib/foo.js": 9}

    def test_added_applied_before_removed(self, tmp_path, monkeypatch):
        calls = []
        original_upsert = IndexBatch.upsert
        original_remove = IndexBatch.remove

        def upsert(self, records):
            calls.append("upsert")
            original_upsert(self, records)

        def remove(self, paths):
            calls.append("remove")
            original_remove(self, paths)

        monkeypatch.setattr(IndexBatch, "upsert", upsert)
        monkeypatch.setattr(IndexBatch, "remove", remove)

        provider = FakeProvider()
        watcher = Watcher(tmp_path, provider=provider, verbose=False)
        watcher.initialize()
        provider.send(FileChange(name="a.js", exists=True, mtime=1))
        calls.clear()

        provider.send(
            FileChange(name="a.js", exists=False),
            FileChange(name="b.js", exists=True, mtime=2),
        )

        assert calls == ["upsert", "remove"]
        assert dict(watcher.index.snapshot()) == {"b.js": 2}

    def test_on_change_receives_grouped_changes(self, tmp_path):
        received = []
        provider = FakeProvider()
        watcher = Watcher(
            tmp_path,
            provider=provider,
            on_change=lambda added, removed: received.append(
                ([r.path for r in added], removed)
            ),
            verbose=False,
        )
        watcher.initialize()

        provider.send(
            FileChange(name="a.js", exists=True, mtime=1),
            FileChange(name="gone.js", exists=False),
            FileChange(name="node_modules/x.js", exists=True, mtime=1),
        )
        provider.send(FileChange(name="node_modules/y.js", exists=True, mtime=1))

        assert received == [(["a.js"], ["gone.js"])]

    def test_removed_directory_drops_files_below_it(self, tmp_path):
        provider = FakeProvider()
        watcher = Watcher(tmp_path, provider=provider, verbose=False)
        watcher.initialize()
        provider.send(
            FileChange(name="lib/foo.js", exists=True, mtime=1),
            FileChange(name="lib/sub/bar.jsx", exists=True, mtime=1),
            FileChange(name="library.js", exists=True, mtime=1),
            FileChange(name="libx/baz.js", exists=True, mtime=1),
        )

        provider.send(FileChange(name="lib", exists=False, directory=True))

        assert sorted(watcher.index.snapshot()) == ["library.js", "libx/baz.js"]

    def test_callback_errors_do_not_reach_provider(self, tmp_path, capsys):
        def on_change(added, removed):
            raise ValueError("broken callback")

        provider = FakeProvider()
        watcher = Watcher(tmp_path, provider=provider, on_change=on_change, verbose=False)
        watcher.initialize()
        provider.send(FileChange(name="a.js", exists=True, mtime=1))

        assert "a.js" in watcher.index
        assert "broken callback" in capsys.readouterr().out

    def test_subscription_lost_is_surfaced(self, tmp_path):
        provider = FakeProvider()
        watcher = Watcher(tmp_path, provider=provider, verbose=False)
        watcher.initialize()
        watcher.check_subscription()

        provider.subscription.active = False

        with pytest.raises(SubscriptionLost):
            watcher.check_subscription()
        assert watcher.state is WatcherState.PUSH_ACTIVE

    def test_stop_cancels_subscription(self, tmp_path):
        provider = FakeProvider()
        with Watcher(tmp_path, provider=provider, verbose=False) as watcher:
            assert watcher.state is WatcherState.PUSH_ACTIVE

        assert provider.subscription.cancelled
        assert watcher.state is WatcherState.STOPPED

    def test_initialize_only_once(self, tmp_path):
        watcher = Watcher(tmp_path, provider=FakeProvider(), verbose=False)
        watcher.initialize()
        with pytest.raises(RuntimeError):
            watcher.initialize()


# =============================================================================
# Polling mode
# =============================================================================


class TestPollingMode:
    def test_falls_back_when_provider_unavailable(self, project, capsys):
        watcher = Watcher(project, provider=FakeProvider(fail=True), poll_interval=3600)
        try:
            assert watcher.initialize() is WatcherState.POLLING
        finally:
            watcher.stop()

        assert "Falling back to polling" in capsys.readouterr().out

    def test_initial_poll_indexes_files(self, project):
        watcher = Watcher(
            project,
            excludes=["**/__mocks__/**"],
            provider=FakeProvider(fail=True),
            poll_interval=3600,
            verbose=False,
        )
        with watcher:
            assert sorted(watcher.index.snapshot()) == ["lib/bar-baz/index.jsx", "lib/foo.js"]

    def test_poll_diffs_against_previous_enumeration(self, project):
        watcher = Watcher(project, provider=FakeProvider(fail=True), poll_interval=3600, verbose=False)
        with watcher:
            _write(project, "lib/new.js")
            (project / "lib" / "foo.js").unlink()

            added, removed = watcher.poll()

            assert [record.path for record in added] == ["lib/new.js"]
            assert removed == ["lib/foo.js"]
            assert "lib/new.js" in watcher.index
            assert "lib/foo.js" not in watcher.index

            # Nothing changed since the last enumeration
            assert watcher.poll() == ([], [])

    def test_poll_reports_modified_files(self, project):
        watcher = Watcher(project, provider=FakeProvider(fail=True), poll_interval=3600, verbose=False)
        with watcher:
            foo = project / "lib" / "foo.js"
            os.utime(foo, (1_000_000, 1_000_000))

            added, removed = watcher.poll()

            assert [record.path for record in added] == ["lib/foo.js"]
            assert removed == []
            assert watcher.index.snapshot()["lib/foo.js"] == 1_000_000_000

    def test_periodic_poll_converges(self, project):
        watcher = Watcher(project, provider=FakeProvider(fail=True), poll_interval=0.05, verbose=False)
        with watcher:
            _write(project, "lib/new.js")
            (project / "lib" / "foo.js").unlink()

            assert _wait_for(
                lambda: "lib/new.js" in watcher.index and "lib/foo.js" not in watcher.index
            )

    def test_failed_tick_is_reported_and_retried(self, project, monkeypatch, capsys):
        calls = []

        def flaky_find_all_files(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise OSError("device busy")
            return find_all_files(*args, **kwargs)

        watcher = Watcher(project, provider=FakeProvider(fail=True), poll_interval=0.05)
        with watcher:
            monkeypatch.setattr(watcher_module, "find_all_files", flaky_find_all_files)
            _write(project, "lib/new.js")

            assert _wait_for(lambda: "lib/new.js" in watcher.index)

        assert len(calls) >= 2
        assert "Warning: Polling" in capsys.readouterr().out

    def test_stop_ends_polling_thread(self, project):
        watcher = Watcher(project, provider=FakeProvider(fail=True), poll_interval=3600, verbose=False)
        watcher.initialize()
        thread = watcher._poll_thread

        watcher.stop()

        assert not thread.is_alive()
        assert watcher.state is WatcherState.STOPPED

    def test_subscription_check_is_noop_while_polling(self, project):
        with Watcher(project, provider=FakeProvider(fail=True), poll_interval=3600, verbose=False) as watcher:
            watcher.check_subscription()

    def test_from_config(self, project):
        config = ImportConfig(excludes=["**/__mocks__/**"], poll_interval=3600)
        watcher = Watcher.from_config(config, project, provider=FakeProvider(fail=True), verbose=False)
        assert watcher.poll_interval == 3600
        with watcher:
            assert "lib/__mocks__/foo.js" not in watcher.index


# =============================================================================
# watchdog provider
# =============================================================================


def test_watchdog_provider_rejects_missing_directory(tmp_path):
    with pytest.raises(ProviderUnavailable):
        WatchdogProvider().watch(str(tmp_path / "missing"))


def test_watchdog_provider_finds_project_root(tmp_path):
    (tmp_path / ".git").mkdir()
    (tmp_path / "packages" / "app").mkdir(parents=True)

    watch_root = WatchdogProvider().watch(str(tmp_path / "packages" / "app"))

    assert watch_root.root == str(tmp_path.resolve())
    assert watch_root.relative_path == "packages/app"
    assert watch_root.directory == (tmp_path / "packages" / "app").resolve()


def test_push_and_polling_agree(project):
    excludes = ["**/__mocks__/**"]
    pushed = Watcher(project, excludes=excludes, verbose=False)
    polled = Watcher(
        project,
        excludes=excludes,
        provider=FakeProvider(fail=True),
        poll_interval=3600,
        verbose=False,
    )
    with pushed, polled:
        if pushed.state is not WatcherState.PUSH_ACTIVE:
            pytest.skip("filesystem notifications unavailable")
        assert dict(pushed.index.snapshot()) == dict(polled.index.snapshot())
        assert sorted(pushed.index.snapshot()) == ["lib/bar-baz/index.jsx", "lib/foo.js"]


class TestBatchingHandler:
    @pytest.fixture
    def batches(self):
        return []

    @pytest.fixture
    def handler(self, project, batches):
        return BatchingHandler(project, WATCHED_SUFFIXES, batches.append)

    @staticmethod
    def _summary(batch):
        return sorted((change.name, change.exists, change.directory) for change in batch)

    def test_initial_batch(self, handler, batches):
        handler.deliver_initial()

        assert self._summary(batches[0]) == [
            ("lib/__mocks__/foo.js", True, False),
            ("lib/bar-baz/index.jsx", True, False),
            ("lib/foo.js", True, False),
        ]

    def test_deleted_directory(self, project, handler, batches):
        shutil.rmtree(project / "lib")
        handler.on_deleted(DirDeletedEvent(str(project / "lib")))

        assert self._summary(batches[0]) == [("lib", False, True)]

    def test_moved_directory(self, project, handler, batches):
        (project / "lib").rename(project / "src")
        handler.on_moved(DirMovedEvent(str(project / "lib"), str(project / "src")))

        assert self._summary(batches[0]) == [
            ("lib", False, True),
            ("src/__mocks__/foo.js", True, False),
            ("src/bar-baz/index.jsx", True, False),
            ("src/foo.js", True, False),
        ]

    def test_created_directory(self, project, handler, batches):
        _write(project, "vendor/util.js")
        _write(project, "vendor/readme.txt", "text")
        handler.on_created(DirCreatedEvent(str(project / "vendor")))

        assert self._summary(batches[0]) == [("vendor/util.js", True, False)]


def test_directory_moved_out_of_tree(tmp_path):
    root = tmp_path / "project"
    _write(root, "lib/foo.js")
    _write(root, "app.js")

    with Watcher(root, verbose=False) as watcher:
        if watcher.state is not WatcherState.PUSH_ACTIVE:
            pytest.skip("filesystem notifications unavailable")
        assert "lib/foo.js" in watcher.index

        shutil.move(str(root / "lib"), str(tmp_path / "outside"))

        assert _wait_for(lambda: "lib/foo.js" not in watcher.index)
        assert "app.js" in watcher.index
