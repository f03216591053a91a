"""Tests for session_store module."""

import json
import logging
import os
import stat
import subprocess
import sys
import threading
from pathlib import Path

import pytest

import session_store
from loop_config import StateConfig
from session_store import (
    CleanupMode,
    SessionNotFoundError,
    SessionStatus,
    SessionStore,
    write_json_atomic,
)

REPO_ROOT = Path(__file__).resolve().parent.parent


def _read_state(state_config: StateConfig) -> dict:
    return json.loads(Path(state_config.state_file).read_text(encoding="utf-8"))


class TestInit:
    def test_creates_empty_state(self, state_config: StateConfig) -> None:
        SessionStore(state_config).init()
        assert _read_state(state_config) == {"sessions": {}}

    def test_keeps_existing_sessions(self, store: SessionStore, state_config: StateConfig) -> None:
        store.set("alpha", status="running")
        store.init()
        assert "alpha" in _read_state(state_config)["sessions"]

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]", '{"sessions": []}', "\xff\xfe"])
    def test_repairs_corrupt_state(
        self, state_config: StateConfig, content: str, caplog: pytest.LogCaptureFixture
    ) -> None:
        path = Path(state_config.state_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content.encode("latin-1"))

        with caplog.at_level(logging.WARNING, logger="session_store"):
            SessionStore(state_config).init()

        assert _read_state(state_config) == {"sessions": {}}
        assert "Corrupt state file" in caplog.text

    def test_operations_repair_on_read(self, state_config: StateConfig) -> None:
        path = Path(state_config.state_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("garbage", encoding="utf-8")

        store = SessionStore(state_config)
        assert store.list() == []
        assert _read_state(state_config) == {"sessions": {}}


class TestGetSet:
    def test_get_missing_returns_none(self, store: SessionStore) -> None:
        assert store.get("nobody") is None

    def test_set_creates_record(self, store: SessionStore) -> None:
        record = store.set("alpha", {"status": SessionStatus.RUNNING, "pid": 42, "dir": "/p"})

        assert record.name == "alpha"
        assert record.pid == 42
        assert store.get("alpha").dir == "/p"

    def test_set_merges_fields(self, store: SessionStore) -> None:
        store.set("alpha", status="running", pid=42, max_iterations=5)
        store.set("alpha", iteration=3)

        record = store.get("alpha")
        assert record.pid == 42
        assert record.iteration == 3
        assert record.max_iterations == 5
        assert record.extra("updated_at")

    def test_enums_and_paths_stored_as_strings(
        self, store: SessionStore, state_config: StateConfig
    ) -> None:
        store.set("alpha", status=SessionStatus.MAX_ITERATIONS, dir=Path("/tmp/x"))
        raw = _read_state(state_config)["sessions"]["alpha"]
        assert raw["status"] == "max_iterations"
        assert raw["dir"] == "/tmp/x"

    def test_extra_fields_round_trip(self, store: SessionStore) -> None:
        store.set("alpha", backend="claude", context_files=["a.md"])
        record = store.get("alpha")
        assert record.extra("backend") == "claude"
        assert record.extra("context_files") == ["a.md"]
        assert record.extra("missing", "default") == "default"

    def test_empty_name_rejected(self, store: SessionStore) -> None:
        with pytest.raises(ValueError):
            store.set("", status="running")
        with pytest.raises(ValueError):
            store.get("  ")

    def test_invalid_stored_fields_fall_back(
        self, store: SessionStore, state_config: StateConfig
    ) -> None:
        payload = {"sessions": {"alpha": {"iteration": -5, "max_iterations": 0, "pid": 7}}}
        Path(state_config.state_file).write_text(json.dumps(payload), encoding="utf-8")

        record = store.get("alpha")
        assert record.pid == 7
        assert record.iteration == 0
        assert record.max_iterations == 1

    def test_list_returns_all(self, store: SessionStore) -> None:
        store.set("a", status="running")
        store.set("b", status="stopped")
        assert sorted(r.name for r in store.list()) == ["a", "b"]


class TestDelete:
    def test_delete_existing(self, store: SessionStore) -> None:
        store.set("alpha", status="running")
        store.delete("alpha")
        assert store.get("alpha") is None

    def test_delete_missing_raises(self, store: SessionStore) -> None:
        with pytest.raises(SessionNotFoundError) as exc_info:
            store.delete("ghost")

        assert isinstance(exc_info.value, KeyError)
        assert str(exc_info.value) == "Session not found: ghost"


class TestCleanupStale:
    @pytest.fixture
    def seeded(self, state_config: StateConfig) -> SessionStore:
        store = SessionStore(state_config, is_alive=lambda pid: pid == 222)
        store.set("dead", status="running", pid=111)
        store.set("alive", status="running", pid=222)
        store.set("stopped", status="stopped", pid=111)
        store.set("nopid", status="running", pid=0)
        return store

    def test_mark(self, seeded: SessionStore) -> None:
        assert seeded.cleanup_stale("mark") == ["dead"]

        assert seeded.get("dead").status == "stale"
        assert seeded.get("alive").status == "running"
        assert seeded.get("stopped").status == "stopped"
        assert seeded.get("nopid").status == "running"

    def test_remove(self, seeded: SessionStore) -> None:
        assert seeded.cleanup_stale(CleanupMode.REMOVE) == ["dead"]
        assert seeded.get("dead") is None
        assert len(seeded.list()) == 3

    def test_invalid_mode(self, seeded: SessionStore) -> None:
        with pytest.raises(ValueError):
            seeded.cleanup_stale("purge")

    def test_no_write_when_nothing_stale(
        self, state_config: StateConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store = SessionStore(state_config, is_alive=lambda pid: True)
        store.set("alpha", status="running", pid=5)

        def fail_write(sessions):
            pytest.fail("state should not be rewritten")

        monkeypatch.setattr(store, "_write_unlocked", fail_write)
        assert store.cleanup_stale() == []


class TestAtomicWrite:
    def test_failed_replace_leaves_original(
        self, store: SessionStore, state_config: StateConfig, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        store.set("alpha", status="running", pid=1)
        state_path = Path(state_config.state_file)
        before = state_path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(session_store.os, "replace", broken_replace)
        with pytest.raises(OSError):
            store.set("alpha", pid=2)
        monkeypatch.undo()

        assert state_path.read_bytes() == before
        leftovers = [p.name for p in state_path.parent.iterdir() if ".tmp." in p.name]
        assert leftovers == []

    def test_preserves_file_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "state.json"
        target.write_text("{}", encoding="utf-8")
        os.chmod(target, 0o600)

        write_json_atomic(target, {"sessions": {}})

        assert stat.S_IMODE(target.stat().st_mode) == 0o600
        assert json.loads(target.read_text(encoding="utf-8")) == {"sessions": {}}

    def test_new_file_gets_default_mode(self, tmp_path: Path) -> None:
        target = tmp_path / "nested" / "state.json"
        write_json_atomic(target, {"sessions": {}})
        assert stat.S_IMODE(target.stat().st_mode) == 0o644

    @pytest.mark.skipif(os.name == "nt", reason="directories cannot be fsynced on Windows")
    def test_directory_synced_after_replace(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        events: list = []
        dir_fds: list = []
        real_open, real_fsync, real_replace = os.open, os.fsync, os.replace

        def recording_open(path, flags, *args):
            fd = real_open(path, flags, *args)
            if Path(path) == tmp_path:
                dir_fds.append(fd)
            return fd

        def recording_fsync(fd):
            events.append(("fsync-dir" if fd in dir_fds else "fsync", fd))
            real_fsync(fd)

        def recording_replace(src, dst):
            events.append(("replace", dst))
            real_replace(src, dst)

        monkeypatch.setattr(session_store.os, "open", recording_open)
        monkeypatch.setattr(session_store.os, "fsync", recording_fsync)
        monkeypatch.setattr(session_store.os, "replace", recording_replace)

        write_json_atomic(tmp_path / "state.json", {"sessions": {}})

        assert [name for name, _ in events] == ["fsync", "replace", "fsync-dir"]


WRITER_SCRIPT = """
import sys
sys.path.insert(0, {root!r})
from loop_config import StateConfig
from session_store import SessionStore
from state_lock import StateLock

config = StateConfig.for_directory({state_dir!r}, lock_timeout_seconds=30.0)
lock = StateLock(config.lock_file, config.lock_dir, timeout=30.0, poll_interval=0.01,
                 use_primary={use_primary!r})
store = SessionStore(config, lock=lock)
for i in range({count}):
    store.set("w{worker}-" + str(i), iteration=i, pid=0)
"""


class TestConcurrency:
    def test_threads_never_lose_updates(self, state_config: StateConfig) -> None:
        store = SessionStore(state_config)
        store.init()

        def worker(n: int) -> None:
            for i in range(10):
                store.set(f"t{n}-{i}", iteration=i)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(store.list()) == 40

    @pytest.mark.parametrize("use_primary", [None, False], ids=["flock", "lock-dir"])
    def test_processes_never_lose_updates(self, state_config: StateConfig, use_primary) -> None:
        SessionStore(state_config).init()
        workers, count = 5, 8
        procs = [
            subprocess.Popen([
                sys.executable, "-c",
                WRITER_SCRIPT.format(
                    root=str(REPO_ROOT),
                    state_dir=str(state_config.state_dir),
                    count=count,
                    worker=n,
                    use_primary=use_primary,
                ),
            ])
            for n in range(workers)
        ]
        for proc in procs:
            assert proc.wait(timeout=60) == 0

        state = _read_state(state_config)
        assert len(state["sessions"]) == workers * count
        assert state["sessions"]["w0-7"]["iteration"] == 7
        assert not Path(state_config.lock_dir).exists()
