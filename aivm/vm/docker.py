"""A VM backend backed by a long-lived Docker container."""

from __future__ import annotations

import base64
import subprocess
import sys
import threading
import time
from collections.abc import Mapping, Sequence

from aivm import run
from aivm.vm.base import VM, Snapshot, StartOptions, Status
from aivm.vm.ssh import shell_escape

CONTAINER_USER = "user"
_READY_POLL = 0.5
_STOPPED_STATES = frozenset({"exited", "stopped", "paused", "created"})
_TAG_UNSAFE = str.maketrans({" ": "-", "/": "-", ":": "-"})


class DockerError(RuntimeError):
    """Raised when a docker command fails."""


def build_bash_cmd(script: str, env: Mapping[str, str] | None) -> str:
    """The ``bash -lc`` command line running script from a temporary file.

    The script travels base64-encoded and is written to a file first so
    package managers cannot consume it from stdin; stderr joins stdout.
    """
    full = script
    if env:
        exports = "".join(f"export {key}={shell_escape(value)}\n" for key, value in env.items())
        full = exports + script
    encoded = base64.b64encode(full.encode()).decode()
    return (
        't=$(mktemp) && echo ' + encoded + ' | base64 -d > "$t" && bash -l "$t" 2>&1; '
        'ec=$?; rm -f "$t"; exit $ec'
    )


def _docker_output(args: Sequence[str]) -> str:
    """Run docker with args and return its stdout; stderr goes into the error."""
    cmd = ["docker", *args]
    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise DockerError(f"docker {' '.join(args)}: {exc}") from exc
    if result.returncode:
        stderr = (result.stderr or b"").decode(errors="replace")
        raise DockerError(
            f"docker {' '.join(args)}: exit status {result.returncode}\n{stderr}"
        )
    return (result.stdout or b"").decode(errors="replace")


def _docker(args: Sequence[str]) -> None:
    _docker_output(args)


def _split_lines(text: str) -> list[str]:
    return text.strip().replace("\r\n", "\n").split("\n")


def _is_tty() -> bool:
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False


class DockerVM(VM):
    """One container per profile, driven through ``docker exec``."""

    def __init__(self, profile: str, state_dir: str, image: str) -> None:
        self.profile = profile
        self.state_dir = state_dir
        self.image = image
        self.container_name = profile
        self._lock = threading.Lock()
        self._last_start_opts = StartOptions()

    def __repr__(self) -> str:
        return f"DockerVM({self.profile!r}, image={self.image!r})"

    @property
    def _snapshot_prefix(self) -> str:
        return f"aivm-snap-{self.profile}-"

    def _run_args(self, opts: StartOptions, image: str) -> list[str]:
        args = ["run", "-d", "--name", self.container_name]
        for mapping in opts.port_mappings:
            args += ["-p", f"{mapping.host_port}:{mapping.container_port}"]
        for mount in opts.mounts:
            mode = "rw" if mount.writable else "ro"
            args += ["-v", f"{mount.host_path}:{mount.host_path}:{mode}"]
        args.append(image)
        return args

    def _exec_args(self, script: str, env: Mapping[str, str] | None) -> list[str]:
        return [
            "exec", "-u", CONTAINER_USER, self.container_name,
            "bash", "-lc", build_bash_cmd(script, env),
        ]

    def _remove_container(self) -> None:
        for args in (["stop", self.container_name], ["rm", "-f", self.container_name]):
            try:
                _docker(args)
            except DockerError:
                pass

    def needs_port_binding_at_boot(self) -> bool:
        return True

    def status(self) -> Status:
        try:
            out = _docker_output(
                ["inspect", "--format", "{{.State.Status}}", self.container_name]
            )
        except DockerError:
            return Status.NOT_FOUND
        state = out.strip()
        if state == "running":
            return Status.RUNNING
        if state in _STOPPED_STATES:
            return Status.STOPPED
        return Status.NOT_FOUND

    def start(self, opts: StartOptions) -> None:
        """Create the container, restart it if stopped, or do nothing if running."""
        status = self.status()
        if status is Status.RUNNING:
            return
        if status is Status.STOPPED:
            _docker(["start", self.container_name])
            return
        with self._lock:
            self._last_start_opts = opts
        _docker(self._run_args(opts, self.image))

    def stop(self) -> None:
        if self.status() is not Status.RUNNING:
            return
        _docker(["stop", self.container_name])

    def destroy(self) -> None:
        """Remove the container; snapshot images are kept."""
        self._remove_container()

    def destroy_with_images(self) -> None:
        """Remove the container and every snapshot image of this profile."""
        self._remove_container()
        try:
            out = _docker_output([
                "images", "--format", "{{.Repository}}:{{.Tag}}",
                "--filter", "reference=" + self._snapshot_prefix + "*",
            ])
        except DockerError:
            out = ""
        for ref in _split_lines(out):
            if ref:
                try:
                    _docker(["rmi", "-f", ref])
                except DockerError:
                    pass

    def run(self, script: str, env: Mapping[str, str] | None) -> None:
        _docker(self._exec_args(script, env))

    def run_output(self, script: str, env: Mapping[str, str] | None) -> str:
        return _docker_output(self._exec_args(script, env))

    def _interactive_prefix(self) -> list[str]:
        args = ["docker", "exec", "-i"]
        if _is_tty():
            args.append("-t")
        return args + ["-u", CONTAINER_USER, self.container_name]

    def run_interactive(self, script: str, env: Mapping[str, str] | None) -> None:
        run.interactive([*self._interactive_prefix(), "bash", "-lc", build_bash_cmd(script, env)])

    def ssh(self) -> None:
        run.interactive([*self._interactive_prefix(), "bash"])

    def wait_ready(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            time.sleep(_READY_POLL)
            if time.monotonic() > deadline:
                raise TimeoutError(
                    f"container {self.container_name} did not become ready within {timeout}s"
                )
            try:
                _docker(["exec", "-u", CONTAINER_USER, self.container_name, "echo", "ready"])
            except DockerError:
                continue
            return

    def create_snapshot(self, name: str) -> None:
        """Commit the container filesystem as a snapshot image."""
        try:
            _docker(["commit", self.container_name, self.snapshot_tag(name)])
        except DockerError as exc:
            raise DockerError(f"create snapshot {name!r}: {exc}") from exc

    def restore_snapshot(self, name: str) -> bool:
        """Recreate the container from a snapshot with the last start options."""
        tag = self.snapshot_tag(name)
        try:
            _docker_output(["inspect", "--type", "image", tag])
        except DockerError:
            return False
        self._remove_container()
        with self._lock:
            opts = self._last_start_opts
        try:
            _docker(self._run_args(opts, tag))
        except DockerError as exc:
            raise DockerError(f"restore snapshot {name!r}: {exc}") from exc
        return True

    def list_snapshots(self) -> list[Snapshot]:
        prefix = self._snapshot_prefix
        try:
            out = _docker_output([
                "images", "--format", "{{.Repository}}:{{.Tag}}",
                "--filter", "reference=" + prefix + "*",
            ])
        except DockerError:
            return []
        snapshots = []
        for ref in _split_lines(out):
            if not ref:
                continue
            name = ref[len(prefix):] if ref.startswith(prefix) else ref
            if name.endswith(":latest"):
                name = name[: -len(":latest")]
            snapshots.append(Snapshot(name=name))
        return snapshots

    def snapshot_tag(self, name: str) -> str:
        """The image tag a snapshot called name is stored under."""
        return f"{self._snapshot_prefix}{name.translate(_TAG_UNSAFE)}:latest"

    def get_published_port(self, container_port: int) -> int:
        """The host port Docker bound for container_port."""
        template = (
            '{{(index (index .NetworkSettings.Ports "'
            f"{container_port}/tcp"
            '") 0).HostPort}}'
        )
        out = _docker_output(["inspect", "--format", template, self.container_name]).strip()
        try:
            return int(out)
        except ValueError as exc:
            raise ValueError(f"failed to parse published port {out!r}: {exc}") from exc