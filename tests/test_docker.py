import base64
import re
import subprocess
from unittest.mock import patch

import pytest

from aivm.vm.base import Mount, PortMapping, StartOptions, Status
from aivm.vm.docker import DockerError, DockerVM, build_bash_cmd


class FakeDocker:
    def __init__(self, respond):
        self.respond = respond
        self.calls = []

    def __call__(self, cmd, **kwargs):
        assert cmd[0] == "docker"
        self.calls.append(list(cmd[1:]))
        rc, out = self.respond(list(cmd[1:]))
        return subprocess.CompletedProcess(
            cmd, rc, stdout=out.encode(), stderr=b"boom" if rc else b""
        )


def fake(respond):
    handler = FakeDocker(respond)
    return handler, patch("aivm.vm.docker.subprocess.run", new=handler)


def stateful(initial):
    """Respond like a docker daemon holding one container in the given state."""
    state = {"status": initial}

    def respond(args):
        if args[0] == "inspect":
            return (1, "") if state["status"] is None else (0, state["status"] + "\n")
        if args[0] in ("run", "start"):
            state["status"] = "running"
        elif args[0] == "stop":
            state["status"] = "exited"
        elif args[0] == "rm":
            state["status"] = None
        return (0, "")

    return respond


def _decode(cmd):
    match = re.search(r"echo (\S+) \| base64 -d", cmd)
    assert match is not None
    return base64.b64decode(match.group(1)).decode()


def test_build_bash_cmd_round_trips_script():
    script = "echo hi\nls -la | wc -l"
    cmd = build_bash_cmd(script, None)
    assert _decode(cmd) == script
    assert cmd.endswith('bash -l "$t" 2>&1; ec=$?; rm -f "$t"; exit $ec')


def test_build_bash_cmd_exports_env():
    cmd = build_bash_cmd("run", {"FOO": "it's"})
    assert _decode(cmd) == "export FOO='it'\"'\"'s'\nrun"


def test_snapshot_tag_replaces_unsafe_characters():
    vm = DockerVM("prof", "/state", "img")
    assert vm.snapshot_tag("a b/c:d") == "aivm-snap-prof-a-b-c-d:latest"


def test_needs_port_binding_at_boot():
    assert DockerVM("p", "/s", "i").needs_port_binding_at_boot() is True


@pytest.mark.parametrize(
    "state, expected",
    [
        ("running", Status.RUNNING),
        ("exited", Status.STOPPED),
        ("paused", Status.STOPPED),
        ("created", Status.STOPPED),
        ("dead", Status.NOT_FOUND),
    ],
)
def test_status_maps_container_state(state, expected):
    _, patcher = fake(lambda args: (0, state + "\n"))
    with patcher:
        assert DockerVM("p", "/s", "i").status() is expected


def test_status_missing_container_is_not_found():
    _, patcher = fake(lambda args: (1, ""))
    with patcher:
        assert DockerVM("p", "/s", "i").status() is Status.NOT_FOUND


def test_start_creates_container_with_mappings_and_mounts():
    handler, patcher = fake(stateful(None))
    opts = StartOptions(
        port_mappings=[PortMapping(8080, 3773)],
        mounts=[Mount("/h", True), Mount("/r", False)],
    )
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.start(opts)
        run_call = handler.calls[-1]
        assert vm.status() is Status.RUNNING
    assert run_call[:4] == ["run", "-d", "--name", "prof"]
    assert run_call[-1] == "img"
    assert "8080:3773" in run_call
    assert "/h:/h:rw" in run_call
    assert "/r:/r:ro" in run_call


def test_start_restarts_stopped_container():
    handler, patcher = fake(stateful("exited"))
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.start(StartOptions())
        assert handler.calls[-1] == ["start", "prof"]
        assert vm.status() is Status.RUNNING


def test_start_running_is_noop():
    handler, patcher = fake(stateful("running"))
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.start(StartOptions())
        assert len(handler.calls) == 1
        assert vm.status() is Status.RUNNING


def test_stop_only_when_running():
    handler, patcher = fake(stateful("exited"))
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.stop()
        assert all(call[0] != "stop" for call in handler.calls)
        assert vm.status() is Status.STOPPED


def test_stop_running_container():
    handler, patcher = fake(stateful("running"))
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.stop()
        assert handler.calls[-1] == ["stop", "prof"]
        assert vm.status() is Status.STOPPED


def test_run_output_returns_stdout_and_uses_container_user():
    handler, patcher = fake(lambda args: (0, "hello\n"))
    with patcher:
        out = DockerVM("prof", "/s", "img").run_output("echo hello", None)
    assert out == "hello\n"
    call = handler.calls[0]
    assert call[:4] == ["exec", "-u", "user", "prof"]
    assert _decode(call[-1]) == "echo hello"


def test_run_failure_raises_docker_error():
    _, patcher = fake(lambda args: (1, ""))
    with patcher, pytest.raises(DockerError, match="boom"):
        DockerVM("prof", "/s", "img").run("false", None)


def test_missing_docker_binary_raises_docker_error():
    with patch("aivm.vm.docker.subprocess.run", side_effect=FileNotFoundError("docker")):
        with pytest.raises(DockerError):
            DockerVM("prof", "/s", "img").run("true", None)


def test_create_snapshot_failure():
    _, patcher = fake(lambda args: (1, ""))
    with patcher, pytest.raises(DockerError, match="create snapshot"):
        DockerVM("prof", "/s", "img").create_snapshot("base")


def test_list_snapshots_strips_prefix_and_tag():
    out = "aivm-snap-prof-one:latest\naivm-snap-prof-two:latest\n"
    _, patcher = fake(lambda args: (0, out))
    with patcher:
        names = [s.name for s in DockerVM("prof", "/s", "img").list_snapshots()]
    assert names == ["one", "two"]


def test_list_snapshots_error_is_empty():
    _, patcher = fake(lambda args: (1, ""))
    with patcher:
        assert DockerVM("prof", "/s", "img").list_snapshots() == []


def test_restore_snapshot_missing_returns_false():
    handler, patcher = fake(lambda args: (1, ""))
    with patcher:
        assert DockerVM("prof", "/s", "img").restore_snapshot("base") is False
    assert len(handler.calls) == 1


def test_restore_snapshot_reuses_start_options():
    state = {"status": "missing"}

    def respond(args):
        if args[:2] == ["inspect", "--format"]:
            return (1, "") if state["status"] == "missing" else (0, state["status"])
        return (0, "")

    handler, patcher = fake(respond)
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.start(StartOptions(port_mappings=[PortMapping(9000, 3773)]))
        assert vm.restore_snapshot("base") is True
    last = handler.calls[-1]
    assert last[-1] == vm.snapshot_tag("base")
    assert "9000:3773" in last


def test_destroy_with_images_removes_snapshots():
    images = ["aivm-snap-prof-a:latest"]

    def respond(args):
        if args[0] == "images":
            return (0, "".join(ref + "\n" for ref in images))
        if args[0] == "rmi":
            images.remove(args[-1])
        return (0, "")

    handler, patcher = fake(respond)
    vm = DockerVM("prof", "/s", "img")
    with patcher:
        vm.destroy_with_images()
        assert ["rm", "-f", "prof"] in handler.calls
        assert handler.calls[-1] == ["rmi", "-f", "aivm-snap-prof-a:latest"]
        assert vm.list_snapshots() == []


def test_get_published_port_parses_output():
    handler, patcher = fake(lambda args: (0, "49153\n"))
    with patcher:
        assert DockerVM("prof", "/s", "img").get_published_port(3773) == 49153
    assert '"3773/tcp"' in handler.calls[0][2]


def test_get_published_port_invalid():
    _, patcher = fake(lambda args: (0, "nope\n"))
    with patcher, pytest.raises(ValueError, match="failed to parse published port"):
        DockerVM("prof", "/s", "img").get_published_port(3773)


def test_wait_ready_times_out():
    _, patcher = fake(lambda args: (1, ""))
    with patcher, pytest.raises(TimeoutError):
        DockerVM("prof", "/s", "img").wait_ready(0)