"""Session lock files and the timestamps used for idle tracking."""

from __future__ import annotations

import os
import re
import signal
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

_LOCK_SUFFIX = ".lock"
_HEADER = re.compile(r"\s*([+-]?\d+)\s+([+-]?\d+)")
_EPOCH = re.compile(r"[+-]?\d+")


@dataclass
class Session:
    """One running agent session, tracked by a lock file."""

    pid: int
    start_epoch: int
    work_dir: str
    lock_file: Path

    def remove(self) -> None:
        """Delete the session's lock file, ignoring errors."""
        _remove(self.lock_file)


def _remove(path: Path) -> None:
    try:
        path.unlink()
    except IsADirectoryError:
        try:
            path.rmdir()
        except OSError:
            pass
    except OSError:
        pass


def split_lines(text: str) -> list[str]:
    """Split text on newlines, dropping empty lines."""
    return [line for line in text.split("\n") if line]


def read_lock(path: str | os.PathLike[str]) -> Session:
    """Parse a lock file of the form ``<pid> <epoch>\\n<workdir>``.

    Raises OSError when the file cannot be read and ValueError when its
    content is not a valid lock.
    """
    lock_path = Path(path)
    lines = split_lines(lock_path.read_text(errors="replace"))
    if not lines:
        raise ValueError("empty lock file")
    match = _HEADER.match(lines[0])
    if match is None:
        raise ValueError("invalid lock format")
    pid, epoch = int(match.group(1)), int(match.group(2))
    if pid <= 0:
        raise ValueError("invalid lock format")
    work_dir = lines[1] if len(lines) > 1 else ""
    return Session(pid=pid, start_epoch=epoch, work_dir=work_dir, lock_file=lock_path)


def is_alive(pid: int) -> bool:
    """Report whether a process with pid exists and can be signalled."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError:
        return False
    return True


def _read_epoch(path: Path) -> int | None:
    try:
        text = path.read_text(errors="replace").strip()
    except OSError:
        return None
    if not _EPOCH.fullmatch(text):
        return None
    return int(text)


def _write_now(path: Path) -> None:
    try:
        path.write_text(str(int(time.time())))
    except OSError:
        pass


class Store:
    """The directory of session lock files under a state directory."""

    def __init__(self, state_dir: str | os.PathLike[str]) -> None:
        self.dir = Path(state_dir) / "sessions"

    def _lock_paths(self) -> list[Path]:
        return sorted(p for p in self.dir.iterdir() if p.name.endswith(_LOCK_SUFFIX))

    def create(self, work_dir: str) -> Session:
        """Record a session for the current process working in work_dir."""
        self.dir.mkdir(parents=True, exist_ok=True)
        pid = os.getpid()
        start = int(time.time())
        lock_file = self.dir / f"{pid}{_LOCK_SUFFIX}"
        lock_file.write_text(f"{pid} {start}\n{work_dir}\n")
        return Session(pid=pid, start_epoch=start, work_dir=work_dir, lock_file=lock_file)

    def count_active(self) -> int:
        """Count live sessions, deleting stale or unreadable lock files."""
        self.dir.mkdir(parents=True, exist_ok=True)
        active = 0
        for lock_path in self._lock_paths():
            try:
                session = read_lock(lock_path)
            except (OSError, ValueError):
                _remove(lock_path)
                continue
            if is_alive(session.pid):
                active += 1
            else:
                _remove(lock_path)
        return active

    def sessions(self) -> list[Session]:
        """Return the live sessions; an absent directory means none."""
        try:
            paths = self._lock_paths()
        except FileNotFoundError:
            return []
        found = []
        for lock_path in paths:
            try:
                session = read_lock(lock_path)
            except (OSError, ValueError):
                continue
            if is_alive(session.pid):
                found.append(session)
        return found

    def last_active_file(self) -> Path:
        """Path of the file recording when the last session ended."""
        return self.dir.parent / "last-session-end"

    def write_last_active(self) -> None:
        """Record now as the time the last session ended."""
        _write_now(self.last_active_file())

    def read_last_active(self) -> datetime:
        """When the last session ended, or now if unknown."""
        epoch = _read_epoch(self.last_active_file())
        if epoch is None:
            return datetime.now()
        return datetime.fromtimestamp(epoch)

    def _vm_stopped_at_file(self) -> Path:
        return self.dir.parent / "vm-stopped-at"

    def write_vm_stopped_at(self) -> None:
        """Record now as the time the VM was stopped."""
        _write_now(self._vm_stopped_at_file())

    def read_vm_stopped_at(self) -> datetime | None:
        """When the VM was stopped, or None if unknown."""
        epoch = _read_epoch(self._vm_stopped_at_file())
        if epoch is None:
            return None
        return datetime.fromtimestamp(epoch)

    def clear_vm_stopped_at(self) -> None:
        """Forget when the VM was stopped."""
        _remove(self._vm_stopped_at_file())

    def kill_all(self) -> list[int]:
        """Send SIGTERM to every live session; return the pids signalled."""
        killed = []
        for session in self.sessions():
            try:
                os.kill(session.pid, signal.SIGTERM)
            except OSError:
                continue
            killed.append(session.pid)
        return killed