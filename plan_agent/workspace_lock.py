"""
Advisory lock on a workspace directory.

A workspace is locked by a JSON file (.plan-agent.lock) in its root. The
lock is created with O_CREAT|O_EXCL so two processes can never both create
it. Known limitation: clearing a stale lock and creating a new one are two
separate steps, so a process that clears a stale lock can still lose the
race to another process that clears the same stale lock at the same time.
The loser gets a WorkspaceLockError.

Lock types:
    pid         held for the lifetime of a process; released on exit or
                signal and stale once the process is gone
    persistent  a marker that something long-lived owns the workspace;
                never stale, released explicitly

Copyright (c) 2025 Martin Bechard [martin.bechard@DevConsult.ca]
"""

import atexit
import json
import os
import signal
import socket
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .output import log, verbose_log, warn

LOCK_FILE_NAME = ".plan-agent.lock"
LOCK_VERSION = 2
LOCK_TYPE_PID = "pid"
LOCK_TYPE_PERSISTENT = "persistent"
DEFAULT_STALE_LOCK_HOURS = 24

# A lock file this young that cannot be parsed is assumed to be mid-write
UNREADABLE_LOCK_GRACE_SECONDS = 5

CLEANUP_SIGNALS = [s for s in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, s)]


class WorkspaceLockError(Exception):
    """The workspace is locked by another live process."""


@dataclass
class LockInfo:
    type: str
    pid: int
    command: str
    started_at: str
    hostname: str
    version: int = LOCK_VERSION

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        return cls(
            type=str(data.get("type", LOCK_TYPE_PID)),
            pid=int(data.get("pid", 0)),
            command=str(data.get("command", "")),
            started_at=str(data.get("started_at", "")),
            hostname=str(data.get("hostname", "")),
            version=int(data.get("version", 1)),
        )

    def describe(self) -> str:
        return f"PID {self.pid} on {self.hostname} ({self.command}), started {self.started_at}"


def is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True


class WorkspaceLock:
    """Lock operations. All state lives in the lock file."""

    # workspace path -> (atexit callback, {signal number: previous handler})
    _cleanup_handlers: dict = {}

    @staticmethod
    def get_lock_file_path(workspace: str) -> Path:
        return Path(workspace) / LOCK_FILE_NAME

    @classmethod
    def get_lock_info(cls, workspace: str) -> Optional[LockInfo]:
        """Read the current lock, or None if there is none or it is unreadable."""
        path = cls.get_lock_file_path(workspace)
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (IOError, ValueError):
            return None
        if not isinstance(data, dict):
            return None
        try:
            return LockInfo.from_dict(data)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def is_lock_stale(info: LockInfo, stale_timeout_hours: float = DEFAULT_STALE_LOCK_HOURS) -> bool:
        if info.type == LOCK_TYPE_PERSISTENT:
            return False
        try:
            started = datetime.fromisoformat(info.started_at)
        except ValueError:
            return True
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if datetime.now(timezone.utc) - started > timedelta(hours=stale_timeout_hours):
            return True
        # Liveness can only be checked for processes on this machine
        if info.hostname == socket.gethostname() and not is_process_alive(info.pid):
            return True
        return False

    @classmethod
    def is_locked(cls, workspace: str, stale_timeout_hours: float = DEFAULT_STALE_LOCK_HOURS) -> bool:
        info = cls.get_lock_info(workspace)
        return info is not None and not cls.is_lock_stale(info, stale_timeout_hours)

    @classmethod
    def acquire_lock(
        cls,
        workspace: str,
        command: str,
        lock_type: str = LOCK_TYPE_PID,
        owner: Optional[str] = None,
        stale_timeout_hours: float = DEFAULT_STALE_LOCK_HOURS,
    ) -> LockInfo:
        """Create the lock file, clearing a stale one first.

        Raises WorkspaceLockError if a live lock is held.
        """
        path = cls.get_lock_file_path(workspace)
        if owner:
            command = f"{command} (owner: {owner})"
        info = LockInfo(
            type=lock_type,
            pid=os.getpid(),
            command=command,
            started_at=datetime.now(timezone.utc).isoformat(),
            hostname=socket.gethostname(),
        )

        for _ in range(2):
            existing = cls.get_lock_info(workspace)
            if existing is not None:
                if not cls.is_lock_stale(existing, stale_timeout_hours):
                    raise WorkspaceLockError(
                        f"Workspace {workspace} is locked by {existing.describe()}"
                    )
                warn(f"Clearing stale lock on {workspace}: {existing.describe()}")
                cls._remove_lock_file(path)
            elif path.exists():
                age = datetime.now().timestamp() - path.stat().st_mtime
                if age < UNREADABLE_LOCK_GRACE_SECONDS:
                    raise WorkspaceLockError(f"Workspace {workspace} is being locked by another process")
                warn(f"Clearing unreadable lock file {path}")
                cls._remove_lock_file(path)

            try:
                fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                # Another process created it between our check and create
                continue
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(info), f, indent=2)
            verbose_log(f"Acquired {lock_type} lock on {workspace}", "LOCK")
            if lock_type == LOCK_TYPE_PID:
                cls.setup_cleanup_handlers(workspace, lock_type)
            return info

        existing = cls.get_lock_info(workspace)
        holder = existing.describe() if existing else "another process"
        raise WorkspaceLockError(f"Workspace {workspace} is locked by {holder}")

    @staticmethod
    def _remove_lock_file(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    @classmethod
    def release_lock(cls, workspace: str, force: bool = False) -> bool:
        """Remove the lock if this process owns it (or force is set).

        Safe to call repeatedly. Never raises. Returns True if a lock file
        was removed.
        """
        try:
            info = cls.get_lock_info(workspace)
            path = cls.get_lock_file_path(workspace)
            if info is None:
                if force and path.exists():
                    cls._remove_lock_file(path)
                    return True
                return False
            if not force and info.type == LOCK_TYPE_PID and info.pid != os.getpid():
                verbose_log(f"Not releasing lock on {workspace} held by PID {info.pid}", "LOCK")
                return False
            cls._remove_lock_file(path)
            verbose_log(f"Released lock on {workspace}", "LOCK")
            return True
        except OSError as e:
            warn(f"Failed to release lock on {workspace}: {e}")
            return False
        finally:
            cls.remove_cleanup_handlers(workspace)

    @classmethod
    def setup_cleanup_handlers(cls, workspace: str, lock_type: str = LOCK_TYPE_PID) -> None:
        """Release a pid lock on interpreter exit and on SIGINT/SIGTERM/SIGHUP."""
        if lock_type != LOCK_TYPE_PID or workspace in cls._cleanup_handlers:
            return

        def release_on_exit() -> None:
            cls.release_lock(workspace)

        def handle_signal(signum, frame):
            log(f"Received {signal.Signals(signum).name}, releasing workspace lock...")
            cls.release_lock(workspace)
            sys.exit(128 + signum)

        atexit.register(release_on_exit)
        previous: dict = {}
        for name in CLEANUP_SIGNALS:
            signum = getattr(signal, name)
            try:
                previous[signum] = signal.signal(signum, handle_signal)
            except ValueError:
                # Not the main thread; atexit still covers normal exits
                break
        cls._cleanup_handlers[workspace] = (release_on_exit, previous)

    @classmethod
    def remove_cleanup_handlers(cls, workspace: str) -> None:
        entry = cls._cleanup_handlers.pop(workspace, None)
        if entry is None:
            return
        release_on_exit, previous = entry
        atexit.unregister(release_on_exit)
        for signum, handler in previous.items():
            try:
                signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
            except ValueError:
                pass
