"""Running enabled plugins in dependency order."""

from __future__ import annotations

import base64
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from aivm import run
from aivm.plugin.base import InstallEnv, Plugin, VMRunner
from aivm.plugin.registry import Registry

MAX_SETUP_RETRIES = 3

_PATH_FILE = "/etc/profile.d/aivm-path.sh"


class PluginSetupError(RuntimeError):
    """Raised when a plugin's setup fails after every retry."""


def setup_retry_delay(attempt: int) -> float:
    """Seconds to wait before attempt (1-indexed): 0, then 10, 20, …"""
    if attempt <= 1:
        return 0.0
    return float((attempt - 1) * 10)


def join_names(names: Sequence[str]) -> str:
    """Join plugin names for a human-readable message."""
    if len(names) == 2:
        return f"{names[0]} and {names[1]}"
    return ", ".join(names)


class _LogWriter:
    """A text stream that forwards complete lines to a logger."""

    def __init__(self, logger: logging.Logger, name: str) -> None:
        self._logger = logger
        self._name = name
        self._pending = ""

    def write(self, text: str) -> int:
        self._pending += text
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            self._logger.info("[%s] %s", self._name, line)
        return len(text)

    def flush(self) -> None:
        if self._pending:
            self._logger.info("[%s] %s", self._name, self._pending)
            self._pending = ""


@dataclass
class Executor:
    """Runs the enabled plugins, and the dependencies they pull in, in order."""

    registry: Registry
    enabled: list[str] = field(default_factory=list)
    plugin_config: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    state_dir: str = ""
    vm: VMRunner | None = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("aivm.plugin"))
    sleep: Callable[[float], None] = time.sleep

    def ordered(self) -> list[Plugin]:
        """Return the enabled plugins and their dependencies in order."""
        return self.registry.resolve(self.enabled)

    def path_file_script(self, ordered: Sequence[Plugin]) -> str | None:
        """Build the script that writes the PATH profile file, or None if unneeded."""
        entries = list(dict.fromkeys(e for p in ordered for e in p.path_entries))
        if not entries:
            return None
        content = (
            "# Managed by aivm — do not edit manually\n"
            'export PATH="' + ":".join(entries) + ':$PATH"\n'
        )
        encoded = base64.b64encode(content.encode()).decode()
        return (
            f"echo '{encoded}' | base64 -d | sudo tee {_PATH_FILE} > /dev/null\n"
            f"sudo chmod 0644 {_PATH_FILE}"
        )

    def _write_path_file(self, ordered: Sequence[Plugin]) -> None:
        script = self.path_file_script(ordered)
        if script is None:
            return
        if self.vm is not None:
            self.vm.run(script, None)
        else:
            run.run(["bash", "-c", script], _LogWriter(self.logger, "path"))

    def _required_by(self) -> dict[str, list[str]]:
        """Map each implicit dependency to the enabled plugins that need it."""
        explicit = set(self.enabled)
        reasons: dict[str, list[str]] = {}

        def collect(root: str, name: str) -> None:
            plugin = self.registry.get(name)
            if plugin is None:
                return
            for dep in plugin.dependencies:
                if dep not in explicit:
                    roots = reasons.setdefault(dep, [])
                    if root not in roots:
                        roots.append(root)
                collect(root, dep)

        for name in self.enabled:
            collect(name, name)
        return reasons

    @staticmethod
    def _installed(plugin: Plugin, env: InstallEnv) -> bool:
        try:
            return plugin.skip_if(env)
        except Exception:
            return False

    def _setup_with_retries(self, plugin: Plugin, env: InstallEnv) -> None:
        error: Exception | None = None
        for attempt in range(1, MAX_SETUP_RETRIES + 1):
            if attempt > 1:
                delay = setup_retry_delay(attempt)
                self.logger.warning(
                    "setup %s failed (attempt %d/%d): %s — retrying in %gs...",
                    plugin.name, attempt - 1, MAX_SETUP_RETRIES, error, delay,
                )
                self.sleep(delay)
                if self._installed(plugin, env):
                    return
            try:
                plugin.setup(env)
            except Exception as exc:
                error = exc
            else:
                return
        if error is not None and not self._installed(plugin, env):
            raise PluginSetupError(f"setup {plugin.name}: {error}") from error

    def run(self, force: bool) -> None:
        """Set up every plugin in order.

        With force, each plugin is set up unconditionally; otherwise plugins
        whose skip check passes are left alone.
        """
        ordered = self.ordered()
        self._write_path_file(ordered)

        explicit = set(self.enabled)
        reasons = self._required_by()

        for plugin in ordered:
            if plugin.name not in explicit and reasons.get(plugin.name):
                self.logger.info(
                    "auto-installing %s (required by: %s)",
                    plugin.name, join_names(reasons[plugin.name]),
                )

            env = InstallEnv(
                config=dict(self.plugin_config.get(plugin.name) or {}),
                state_dir=self.state_dir,
                log=_LogWriter(self.logger, plugin.name),
                vm=self.vm,
            )

            if not force:
                try:
                    skip = plugin.skip_if(env)
                except Exception as exc:
                    self.logger.warning("skip_if failed for plugin %s: %s", plugin.name, exc)
                    skip = False
                if skip:
                    self.logger.info("skip %s (already set up)", plugin.name)
                    continue

            self.logger.info("Plugin: %s", plugin.name)
            start = time.monotonic()
            self._setup_with_retries(plugin, env)
            elapsed = round(time.monotonic() - start)
            self.logger.info("%s set up (%ds)", plugin.name, elapsed)