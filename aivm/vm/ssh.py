"""Shell quoting and interactive SSH into Colima VMs."""

from __future__ import annotations

import os
from collections.abc import Mapping

from aivm import run


def shell_escape(s: str) -> str:
    """Wrap s in single quotes, escaping embedded single quotes."""
    return "'" + s.replace("'", "'\"'\"'") + "'"


def colima_ssh_coords(profile: str) -> tuple[str, str]:
    """The SSH config file and host alias that Colima writes for profile."""
    colima_home = os.environ.get("COLIMA_HOME") or os.path.join(
        os.path.expanduser("~"), ".colima"
    )
    ssh_config = os.path.join(colima_home, "_lima", f"colima-{profile}", "ssh.config")
    return ssh_config, f"lima-colima-{profile}"


def remote_command(env: Mapping[str, str] | None, script: str) -> str:
    """The remote command line running script in a login shell with env set."""
    parts = [f"{key}={shell_escape(value)}" for key, value in (env or {}).items()]
    parts.append("bash -lc " + shell_escape(script))
    return " ".join(parts)


def interactive_ssh(profile: str, env: Mapping[str, str] | None, script: str) -> None:
    """Run script in the VM over SSH with a terminal attached."""
    ssh_config, ssh_host = colima_ssh_coords(profile)
    run.interactive(["ssh", "-t", "-F", ssh_config, ssh_host, remote_command(env, script)])