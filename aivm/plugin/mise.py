"""Plugins synthesised on demand for tools managed by mise."""

from __future__ import annotations

from dataclasses import dataclass

from aivm import run
from aivm.plugin.base import InstallEnv, Plugin

_PREFIX = "mise-"

_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "\a": "\\a",
    "\b": "\\b",
    "\f": "\\f",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
    "\v": "\\v",
}


def _quote(text: str) -> str:
    """Double-quote text with backslash escapes for special characters."""
    parts = []
    for ch in text:
        code = ord(ch)
        if ch in _ESCAPES:
            parts.append(_ESCAPES[ch])
        elif ch.isprintable():
            parts.append(ch)
        elif code < 0x80:
            parts.append(f"\\x{code:02x}")
        elif code < 0x10000:
            parts.append(f"\\u{code:04x}")
        else:
            parts.append(f"\\U{code:08x}")
    return '"' + "".join(parts) + '"'


@dataclass
class MisePlugin(Plugin):
    """A plugin for any tool mise can install, named ``mise-<tool>``.

    Configured with ``version`` (default "latest") and ``extra_versions``.
    """

    name: str
    tool: str

    @property
    def description(self) -> str:
        return f"{self.tool} via mise"

    @property
    def dependencies(self) -> list[str]:
        return ["mise"]

    @property
    def agents(self) -> list[str]:
        return []

    @property
    def path_entries(self) -> list[str]:
        return []

    def skip_if_script(self, version: str, extras: list[str]) -> str:
        """Build a script that succeeds only when every version is installed."""
        header = (
            "_check() {\n"
            '  local v="$1"\n'
            '  if [ "$v" = "latest" ]; then\n'
            f"    v=$(mise latest {self.tool} 2>/dev/null) || return 1\n"
            "  fi\n"
            f'  mise where {self.tool}@"$v" >/dev/null 2>&1\n'
            "}\n"
        )
        checks = " && ".join(f"_check {_quote(v)}" for v in [version, *extras])
        return header + checks

    def _versions(self, env: InstallEnv) -> tuple[str, list[str]]:
        version = env.config_string("version", "latest")
        extras = env.config_string_slice("extra_versions") or []
        return version, extras

    def skip_if(self, env: InstallEnv) -> bool:
        script = self.skip_if_script(*self._versions(env))
        if env.vm is not None:
            try:
                env.vm.run(script, None)
            except Exception:
                return False
            return True
        try:
            run.output(["bash", "-lc", script])
        except (OSError, run.subprocess.CalledProcessError):
            return False
        return True

    def setup(self, env: InstallEnv) -> None:
        version, extras = self._versions(env)
        lines = [f"mise use --global {self.tool}@{version}"]
        lines.extend(f"mise install {self.tool}@{v}" for v in extras)
        script = "\n".join(lines)
        if env.vm is not None:
            env.vm.run(script, None)
            return
        run.run(["bash", "-c", script], env.log)


def new_mise_plugin(name: str) -> MisePlugin | None:
    """Return a MisePlugin for ``mise-<tool>`` names, otherwise None."""
    if not name.startswith(_PREFIX):
        return None
    tool = name[len(_PREFIX):]
    if not tool:
        return None
    return MisePlugin(name=name, tool=tool)