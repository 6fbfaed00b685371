"""Lifecycle of the port-forward tunnel for the T3 Code web GUI."""

from __future__ import annotations

import os
import re
import signal
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from aivm.session import is_alive
from aivm.vm.ssh import colima_ssh_coords

PID_FILE_NAME = "t3code-tunnel.pid"

_PID = re.compile(r"[+-]?\d+")


class Manager(ABC):
    """Starts, stops and inspects the host-side tunnel."""

    @abstractmethod
    def launch(self, port: int) -> None:
        """Forward localhost:port to the same port in the VM; no-op if running."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the tunnel; a tunnel that is not running is not an error."""

    @abstractmethod
    def is_running(self) -> bool:
        """Report whether the tunnel is active."""


class NoopManager(Manager):
    """A Manager that only records calls."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._launches = 0
        self._running = False

    def launch(self, port: int) -> None:
        with self._lock:
            self._launches += 1
            self._running = True

    def stop(self) -> None:
        with self._lock:
            self._running = False

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def launch_call_count(self) -> int:
        """How many times launch has been called."""
        with self._lock:
            return self._launches


@dataclass
class Tunnel(Manager):
    """An SSH port-forward to a Colima VM, tracked by a pid file."""

    profile: str
    state_dir: str

    @property
    def _pid_file(self) -> Path:
        return Path(self.state_dir) / PID_FILE_NAME

    def _read_pid(self) -> int | None:
        try:
            text = self._pid_file.read_text(errors="replace").strip()
        except OSError:
            return None
        if not _PID.fullmatch(text):
            return None
        return int(text)

    def ssh_coords(self) -> tuple[str, str]:
        """The SSH config file and host alias for this profile."""
        return colima_ssh_coords(self.profile)

    def launch(self, port: int) -> None:
        if self.is_running():
            return
        ssh_config, ssh_host = self.ssh_coords()
        forward = f"{port}:localhost:{port}"
        try:
            proc = subprocess.Popen(
                ["ssh", "-N", "-L", forward, "-F", ssh_config, ssh_host],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as exc:
            raise RuntimeError(f"starting SSH tunnel: {exc}") from exc
        try:
            self._pid_file.write_text(str(proc.pid))
        except OSError as exc:
            raise RuntimeError(f"writing tunnel PID file: {exc}") from exc

    def stop(self) -> None:
        pid = self._read_pid()
        if not pid:
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError:
            pass
        try:
            self._pid_file.unlink()
        except OSError:
            pass

    def is_running(self) -> bool:
        pid = self._read_pid()
        if not pid:
            return False
        return is_alive(pid)