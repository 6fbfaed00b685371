"""A cross-process lock serialising VM start, stop and destroy."""

from __future__ import annotations

import os
import re
import shutil
import time
from pathlib import Path

from aivm.session import is_alive

_POLL_INTERVAL = 0.5
_PID = re.compile(r"[+-]?\d+")


class LockTimeoutError(TimeoutError):
    """Raised when the lifecycle lock stays held past the timeout."""


class _Held:
    """A held lock; release it by calling it, via release(), or with ``with``."""

    def __init__(self, lock_dir: Path) -> None:
        self._lock_dir = lock_dir

    def release(self) -> None:
        shutil.rmtree(self._lock_dir, ignore_errors=True)

    __call__ = release

    def __enter__(self) -> _Held:
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class LifecycleLock:
    """A lock held by creating a directory that records the holder's pid."""

    def __init__(self, state_dir: str | os.PathLike[str]) -> None:
        self.lock_dir = Path(state_dir) / "lifecycle.lock.d"

    def _holder(self) -> int | None:
        try:
            text = (self.lock_dir / "pid").read_text(errors="replace")
        except OSError:
            return None
        return int(text) if _PID.fullmatch(text) else 0

    def acquire(self, timeout: float) -> _Held:
        """Take the lock, waiting up to timeout seconds.

        A lock whose holder process is gone is broken and taken over.
        """
        deadline = time.monotonic() + timeout
        pid_file = self.lock_dir / "pid"
        while True:
            try:
                os.mkdir(self.lock_dir, 0o700)
            except OSError:
                pass
            else:
                try:
                    pid_file.write_text(str(os.getpid()))
                    os.chmod(pid_file, 0o600)
                except OSError as exc:
                    shutil.rmtree(self.lock_dir, ignore_errors=True)
                    raise OSError(f"lifecycle lock: write pid file: {exc}") from exc
                return _Held(self.lock_dir)

            pid = self._holder()
            if pid and pid > 0 and not is_alive(pid):
                shutil.rmtree(self.lock_dir, ignore_errors=True)
                continue

            if time.monotonic() > deadline:
                raise LockTimeoutError(
                    f"could not acquire lifecycle lock within {timeout}s"
                )
            time.sleep(_POLL_INTERVAL)