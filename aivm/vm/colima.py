"""A VM backend driven by the ``colima`` command-line tool."""

from __future__ import annotations

import base64
import logging
import platform
import subprocess
import time
from collections.abc import Mapping
from pathlib import Path

from aivm import run
from aivm.vm.base import VM, Snapshot, StartOptions, Status
from aivm.vm.lock import LifecycleLock
from aivm.vm.ssh import interactive_ssh, shell_escape

_LOCK_TIMEOUT = 30.0
_READY_POLL = 2.0
_STOP_CONTAINERS = "docker ps -q 2>/dev/null | xargs -r docker stop --time=10 2>/dev/null || true"

logger = logging.getLogger("aivm.vm")

_FAILURES = (OSError, subprocess.CalledProcessError)


class _LogStream:
    """A text stream that forwards complete lines to the logger."""

    def __init__(self, name: str) -> None:
        self._name = name
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            logger.info("[%s] %s", self._name, line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            logger.info("[%s] %s", self._name, self._pending)
            self._pending = ""


def encoded_script(script: str, env: Mapping[str, str] | None) -> str:
    """The shell line that decodes and runs script, with env exported first."""
    full = script
    if env:
        exports = "".join(f"export {key}={shell_escape(value)}\n" for key, value in env.items())
        full = exports + script
    encoded = base64.b64encode(full.encode()).decode()
    return f"echo {encoded} | base64 -d | bash -l"


class ColimaVM(VM):
    """A Colima profile used as the VM."""

    def __init__(self, profile: str, state_dir: str) -> None:
        self.profile = profile
        self.state_dir = state_dir
        self._lock = LifecycleLock(state_dir)

    def __repr__(self) -> str:
        return f"ColimaVM({self.profile!r})"

    def needs_port_binding_at_boot(self) -> bool:
        return False

    def status(self) -> Status:
        try:
            lines = run.output_lines(["colima", "list"])
        except _FAILURES:
            return Status.NOT_FOUND
        for line in lines:
            fields = line.split()
            if len(fields) >= 2 and fields[0] == self.profile:
                if fields[1] == "Running":
                    return Status.RUNNING
                if fields[1] == "Stopped":
                    return Status.STOPPED
        return Status.NOT_FOUND

    def _ssh_args(self, script: str, env: Mapping[str, str] | None) -> list[str]:
        return [
            "colima", "ssh", "--profile", self.profile, "--",
            "bash", "-lc", encoded_script(script, env),
        ]

    def start(self, opts: StartOptions) -> None:
        with self._lock.acquire(_LOCK_TIMEOUT):
            status = self.status()
            (Path(self.state_dir) / "logs").mkdir(parents=True, exist_ok=True)
            stream = _LogStream("colima")

            if status is Status.RUNNING:
                logger.info("VM '%s' is already running", self.profile)
                return
            if status is Status.STOPPED:
                logger.info("Resuming stopped VM '%s'", self.profile)
                run.run(["colima", "start", self.profile], stream)
                return

            memory_gib = opts.memory_bytes >> 30
            disk_gib = opts.disk_bytes >> 30
            logger.info("Creating Colima VM '%s'", self.profile)
            logger.info(
                "CPU=%d Memory=%dGiB Disk=%dGiB Type=%s",
                opts.cpus, memory_gib, disk_gib, opts.vm_type,
            )
            args = [
                "colima", "start", self.profile,
                "--cpu", str(opts.cpus),
                "--memory", str(memory_gib),
                "--disk", str(disk_gib),
                *self.vm_type_flags(opts.vm_type),
            ]
            for mount in opts.mounts:
                args += ["--mount", f"{mount.host_path}:{'w' if mount.writable else 'r'}"]
            if not opts.ssh_agent:
                args.append("--ssh-agent=false")
            run.run(args, stream)

    def stop(self) -> None:
        with self._lock.acquire(_LOCK_TIMEOUT):
            if self.status() is not Status.RUNNING:
                logger.info("VM '%s' is not running — nothing to stop", self.profile)
                return

            logger.info("Stopping Docker containers inside VM...")
            try:
                self.run(_STOP_CONTAINERS, None)
            except _FAILURES:
                pass

            logger.info("Stopping Colima VM '%s'", self.profile)
            try:
                run.run(["colima", "stop", self.profile], _LogStream("colima"))
            except _FAILURES:
                logger.warning("graceful stop failed, forcing...")
                try:
                    run.quiet(["colima", "stop", self.profile, "--force"])
                except _FAILURES:
                    pass
            logger.info("VM '%s' stopped (disk preserved)", self.profile)

    def destroy(self) -> None:
        with self._lock.acquire(_LOCK_TIMEOUT):
            status = self.status()
            if status is Status.RUNNING:
                try:
                    self.run(_STOP_CONTAINERS, None)
                except _FAILURES:
                    pass
                try:
                    run.quiet(["colima", "stop", self.profile, "--force"])
                except _FAILURES:
                    pass

            if status is Status.NOT_FOUND:
                logger.info("VM '%s' does not exist — nothing to destroy", self.profile)
                return

            logger.info("Deleting VM profile '%s'", self.profile)
            try:
                run.run(
                    ["colima", "delete", self.profile, "--force", "--data"],
                    _LogStream("colima"),
                )
            except _FAILURES as exc:
                raise RuntimeError(f"delete VM: {exc}") from exc
            logger.info("VM '%s' destroyed", self.profile)
            try:
                self.age_file().unlink()
            except OSError:
                pass

    def run(self, script: str, env: Mapping[str, str] | None) -> None:
        run.run(self._ssh_args(script, env), _LogStream("vm"))

    def run_output(self, script: str, env: Mapping[str, str] | None) -> str:
        try:
            return run.capture(self._ssh_args(script, env))
        except subprocess.CalledProcessError as exc:
            raise RuntimeError(f"run output: {exc}\n{exc.output or ''}") from exc

    def run_interactive(self, script: str, env: Mapping[str, str] | None) -> None:
        interactive_ssh(self.profile, env, script)

    def ssh(self) -> None:
        run.interactive(["colima", "ssh", "--profile", self.profile])

    def wait_ready(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            try:
                run.quiet(["colima", "ssh", "--profile", self.profile, "--", "echo", "ready"])
            except _FAILURES:
                time.sleep(_READY_POLL)
            else:
                return
        raise TimeoutError(f"VM did not become reachable within {timeout}s")

    def create_snapshot(self, name: str) -> None:
        run.quiet(["colima", "snapshot", "create", "--name", name, self.profile])

    def restore_snapshot(self, name: str) -> bool:
        if not any(snap.name == name for snap in self.list_snapshots()):
            return False
        run.quiet(["colima", "snapshot", "restore", "--name", name, self.profile])
        return True

    def list_snapshots(self) -> list[Snapshot]:
        try:
            lines = run.output_lines(["colima", "snapshot", "list", self.profile])
        except _FAILURES:
            return []
        return [Snapshot(name=line.split()[0]) for line in lines if line.split()]

    def vm_type_flags(self, vm_type: str) -> list[str]:
        """Command-line flags selecting the virtualisation type."""
        is_darwin = platform.system() == "Darwin"
        effective = vm_type
        if not effective:
            effective = "vz" if is_darwin and platform.machine() == "arm64" else "qemu"
        if effective == "vz" and is_darwin:
            return ["--vm-type", "vz", "--vz-rosetta"]
        return ["--vm-type", "qemu"]

    def age_file(self) -> Path:
        """The file recording when the VM was created."""
        return Path(self.state_dir) / "vm-created-at"