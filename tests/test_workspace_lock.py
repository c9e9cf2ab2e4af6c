# tests/test_workspace_lock.py
# Unit tests for the advisory workspace lock.

import json
import os
import socket
import subprocess
import sys
from datetime import datetime, timedelta, timezone

import pytest

from plan_agent.workspace_lock import (
    LOCK_FILE_NAME,
    LOCK_TYPE_PERSISTENT,
    LOCK_TYPE_PID,
    LockInfo,
    WorkspaceLock,
    WorkspaceLockError,
)


def _dead_pid() -> int:
    """Return the pid of a process that has already exited."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def _write_lock(workspace, **fields):
    data = {
        "type": LOCK_TYPE_PID,
        "pid": os.getpid(),
        "command": "other agent",
        "started_at": datetime.now(timezone.utc).isoformat(),
        "hostname": socket.gethostname(),
        "version": 2,
    }
    data.update(fields)
    (workspace / LOCK_FILE_NAME).write_text(json.dumps(data))


@pytest.fixture(autouse=True)
def _drop_cleanup_handlers():
    yield
    for workspace in list(WorkspaceLock._cleanup_handlers):
        WorkspaceLock.remove_cleanup_handlers(workspace)


# --- acquire/release tests ---


def test_acquire_writes_lock_record(tmp_path):
    info = WorkspaceLock.acquire_lock(str(tmp_path), "plan-agent agent 1")
    try:
        data = json.loads((tmp_path / LOCK_FILE_NAME).read_text())
        assert data["pid"] == os.getpid()
        assert data["type"] == LOCK_TYPE_PID
        assert data["command"] == "plan-agent agent 1"
        assert data["hostname"] == socket.gethostname()
        assert info.version == 2
    finally:
        WorkspaceLock.release_lock(str(tmp_path))


def test_second_acquire_fails_while_held(tmp_path):
    WorkspaceLock.acquire_lock(str(tmp_path), "first")
    try:
        with pytest.raises(WorkspaceLockError, match="is locked by"):
            WorkspaceLock.acquire_lock(str(tmp_path), "second")
    finally:
        WorkspaceLock.release_lock(str(tmp_path))


def test_release_then_reacquire(tmp_path):
    WorkspaceLock.acquire_lock(str(tmp_path), "first")
    assert WorkspaceLock.release_lock(str(tmp_path)) is True
    assert not (tmp_path / LOCK_FILE_NAME).exists()

    WorkspaceLock.acquire_lock(str(tmp_path), "second")
    assert WorkspaceLock.get_lock_info(str(tmp_path)).command == "second"
    WorkspaceLock.release_lock(str(tmp_path))


def test_release_is_idempotent(tmp_path):
    WorkspaceLock.acquire_lock(str(tmp_path), "first")
    assert WorkspaceLock.release_lock(str(tmp_path)) is True
    assert WorkspaceLock.release_lock(str(tmp_path)) is False
    assert WorkspaceLock.release_lock(str(tmp_path / "missing")) is False


def test_release_removes_cleanup_handlers(tmp_path):
    WorkspaceLock.acquire_lock(str(tmp_path), "first")
    assert str(tmp_path) in WorkspaceLock._cleanup_handlers
    WorkspaceLock.release_lock(str(tmp_path))
    assert str(tmp_path) not in WorkspaceLock._cleanup_handlers


def test_foreign_lock_needs_force(tmp_path):
    _write_lock(tmp_path, pid=os.getppid())
    assert WorkspaceLock.release_lock(str(tmp_path)) is False
    assert (tmp_path / LOCK_FILE_NAME).exists()
    assert WorkspaceLock.release_lock(str(tmp_path), force=True) is True
    assert not (tmp_path / LOCK_FILE_NAME).exists()


def test_owner_is_recorded_in_command(tmp_path):
    info = WorkspaceLock.acquire_lock(str(tmp_path), "plan-agent lock acquire",
                                      lock_type=LOCK_TYPE_PERSISTENT, owner="alice")
    assert info.command == "plan-agent lock acquire (owner: alice)"
    assert str(tmp_path) not in WorkspaceLock._cleanup_handlers
    WorkspaceLock.release_lock(str(tmp_path))


# --- staleness tests ---


def test_lock_of_dead_process_is_stale_and_cleared(tmp_path, capsys):
    _write_lock(tmp_path, pid=_dead_pid())
    info = WorkspaceLock.get_lock_info(str(tmp_path))
    assert WorkspaceLock.is_lock_stale(info) is True

    WorkspaceLock.acquire_lock(str(tmp_path), "new owner")
    try:
        assert WorkspaceLock.get_lock_info(str(tmp_path)).pid == os.getpid()
        assert "Clearing stale lock" in capsys.readouterr().out
    finally:
        WorkspaceLock.release_lock(str(tmp_path))


def test_old_lock_is_stale_even_if_process_alive(tmp_path):
    started = datetime.now(timezone.utc) - timedelta(hours=25)
    info = LockInfo(type=LOCK_TYPE_PID, pid=os.getpid(), command="x",
                    started_at=started.isoformat(), hostname=socket.gethostname())
    assert WorkspaceLock.is_lock_stale(info) is True
    assert WorkspaceLock.is_lock_stale(info, stale_timeout_hours=48) is False


def test_lock_held_by_live_process_is_not_stale(tmp_path):
    _write_lock(tmp_path, pid=os.getppid())
    assert WorkspaceLock.is_locked(str(tmp_path)) is True
    with pytest.raises(WorkspaceLockError):
        WorkspaceLock.acquire_lock(str(tmp_path), "second")


def test_persistent_lock_is_never_stale(tmp_path):
    started = datetime.now(timezone.utc) - timedelta(days=30)
    info = LockInfo(type=LOCK_TYPE_PERSISTENT, pid=_dead_pid(), command="x",
                    started_at=started.isoformat(), hostname=socket.gethostname())
    assert WorkspaceLock.is_lock_stale(info) is False


def test_unparseable_start_time_is_stale():
    info = LockInfo(type=LOCK_TYPE_PID, pid=os.getpid(), command="x",
                    started_at="not a date", hostname=socket.gethostname())
    assert WorkspaceLock.is_lock_stale(info) is True


def test_get_lock_info_has_no_side_effects(tmp_path):
    assert WorkspaceLock.get_lock_info(str(tmp_path)) is None
    _write_lock(tmp_path, pid=_dead_pid())
    WorkspaceLock.get_lock_info(str(tmp_path))
    assert (tmp_path / LOCK_FILE_NAME).exists()
