# aivm

`aivm` is a library for managing a Linux VM, backed either by a Colima
profile or by a long-lived Docker container, in which AI coding agents
run. It bootstraps that VM with plugins installed in dependency order,
records base images so new VMs can be restored instead of rebuilt, and
tracks agent sessions with lock files.

## Installation

```
pip install .
```

The library drives external programs: `colima`, `docker`, `ssh` and
`bash` must be on `PATH` for the parts that use them.

## Modules

- `aivm.run` runs host commands: `run` (streams output to a text stream),
  `run_env`, `output`, `output_lines`, `capture`, `quiet`, `interactive`,
  `interactive_env` and `check` (is a program on `PATH`). A failing
  command raises `subprocess.CalledProcessError`.
- `aivm.vm.base` defines the abstract `VM` and the `Status` enum
  (`NOT_FOUND`, `STOPPED`, `RUNNING`), plus `StartOptions`, `Mount`,
  `PortMapping` and `Snapshot`.
- `aivm.vm.colima.ColimaVM` drives `colima`; scripts run over
  `colima ssh` after being base64-encoded by `encoded_script`. Start, stop
  and destroy are serialised by a `LifecycleLock`.
- `aivm.vm.docker.DockerVM` maps a profile to one container and runs
  scripts with `docker exec` as the container user `user`; snapshots are
  committed images tagged `aivm-snap-<profile>-<name>:latest`. Failing
  docker commands raise `DockerError`. `build_bash_cmd` builds the
  command line used inside the container.
- `aivm.vm.factory.new_vm(backend, profile, state_dir, docker_image)`
  returns a `ColimaVM` for `""` or `"colima"`, a `DockerVM` for
  `"docker"`, and raises `UnknownBackendError` otherwise.
- `aivm.vm.image.ImageManager` saves base-image metadata to
  `base-image.json` (with a snapshot when the backend can make one),
  restores from it with `try_restore_base_image`, and reports VM and
  base-image ages in days.
- `aivm.vm.lock.LifecycleLock` is a cross-process lock held by creating a
  directory; `acquire(timeout)` returns a handle usable with `with`,
  breaks locks whose holder process is gone, and raises
  `LockTimeoutError` on timeout.
- `aivm.vm.ssh` provides `shell_escape`, `colima_ssh_coords`,
  `remote_command` and `interactive_ssh`.
- `aivm.plugin.base` defines the `Plugin` contract, `InstallEnv` and the
  `VMRunner` protocol.
- `aivm.plugin.dag.topological_sort` orders a dependency graph, breaking
  ties alphabetically, and raises `CycleError` on a cycle.
- `aivm.plugin.yaml_plugin` holds `PluginDef`, `load_plugin_defs` (parse
  YAML text), `merge_plugin_def`, `YAMLPlugin` and `render_template`, a
  small template engine for scripts supporting `{{.key}}`, `if`/`else`/
  `else if`, `range`, `with`, comments and `{{-`/`-}}` trimming. Bad
  templates raise `TemplateError`.
- `aivm.plugin.mise` synthesises a `MisePlugin` for any `mise-<tool>`
  name, using the `version` (default `latest`) and `extra_versions`
  config keys.
- `aivm.plugin.registry.Registry` looks plugins up (explicit ones first,
  then `mise-<tool>` names) and `resolve`s enabled names plus their
  dependencies into order, raising `PluginNotFoundError` for unknown
  names. `register` adds to the process-wide registry returned by
  `global_registry` and raises `DuplicatePluginError` on a repeated name.
- `aivm.plugin.executor.Executor` writes collected `path_entries` to
  `/etc/profile.d/aivm-path.sh`, then sets up each plugin in order,
  skipping those whose skip check passes unless `force` is true. Failed
  setups are retried up to three times with waits given by
  `setup_retry_delay`; a setup that still fails raises `PluginSetupError`.
- `aivm.session.Store` keeps session lock files under
  `<state_dir>/sessions`, counts and lists live sessions, records the
  last-session-end and VM-stopped times, and can SIGTERM every session.
- `aivm.t3code` defines the `Manager` interface, `Tunnel` (an SSH
  port-forward to a Colima VM tracked by a pid file) and `NoopManager`,
  which only records calls.

Progress is reported through the standard `logging` module under the
`aivm.plugin` and `aivm.vm` loggers.

## Example

```python
from aivm.plugin.executor import Executor
from aivm.plugin.registry import Registry
from aivm.plugin.yaml_plugin import PluginDef, YAMLPlugin
from aivm.vm.factory import new_vm

registry = Registry()
registry.set(YAMLPlugin("system", PluginDef(setup="sudo apt-get update")))
registry.set(YAMLPlugin("mise", PluginDef(
    dependencies=["system"],
    skip_if="command -v mise",
    setup="bash /opt/install-mise.sh",
    path_entries=["$HOME/.local/bin"],
)))

vm = new_vm("docker", "dev", "/tmp/aivm-state", "ubuntu:24.04")
executor = Executor(
    registry=registry,
    enabled=["mise-node"],   # pulls in mise and system automatically
    plugin_config={"mise-node": {"version": "22"}},
    state_dir="/tmp/aivm-state",
    vm=vm,
)
executor.run(force=False)
```

## What it does not do

This is a library only. It has no command-line program, does not read a
configuration file of its own, ships no built-in plugin definitions, and
has no idle monitor, agent launcher or record of which bootstrap has been
applied. Those are left to the code that uses it.

## Tests

```
pip install .[test]
pytest
```