"""The plugin registry: lookup and dependency resolution."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from aivm.plugin.base import Plugin
from aivm.plugin.dag import topological_sort
from aivm.plugin.mise import new_mise_plugin


class PluginNotFoundError(LookupError):
    """Raised when a requested plugin is neither registered nor synthesisable."""


class DuplicatePluginError(ValueError):
    """Raised when a plugin name is registered twice."""


class Registry:
    """A thread-safe collection of plugins keyed by name.

    Names of the form ``mise-<tool>`` resolve to synthesised plugins
    unless a plugin of that name is registered explicitly.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._plugins: dict[str, Plugin] = {}

    def _lookup(self, name: str) -> Plugin | None:
        plugin = self._plugins.get(name)
        if plugin is not None:
            return plugin
        return new_mise_plugin(name)

    def _add_new(self, plugin: Plugin) -> None:
        with self._lock:
            if plugin.name in self._plugins:
                raise DuplicatePluginError(f"plugin {plugin.name!r} already registered")
            self._plugins[plugin.name] = plugin

    def all(self) -> dict[str, Plugin]:
        """Return a copy of the explicitly registered plugins."""
        with self._lock:
            return dict(self._plugins)

    def get(self, name: str) -> Plugin | None:
        """Return the plugin for name, or None."""
        with self._lock:
            return self._lookup(name)

    def set(self, plugin: Plugin) -> None:
        """Register or replace a plugin by name."""
        with self._lock:
            self._plugins[plugin.name] = plugin

    def resolve(self, enabled: Iterable[str]) -> list[Plugin]:
        """Return enabled plugins and their dependencies in dependency order."""
        with self._lock:
            needed: set[str] = set()

            def expand(name: str) -> None:
                if name in needed:
                    return
                needed.add(name)
                plugin = self._lookup(name)
                if plugin is None:
                    raise PluginNotFoundError(
                        f"plugin {name!r} not found (check spelling or register it)"
                    )
                for dep in plugin.dependencies:
                    expand(dep)

            for name in enabled:
                expand(name)

            plugins = {name: self._lookup(name) for name in needed}
            subgraph = {
                name: [dep for dep in plugin.dependencies if dep in needed]
                for name, plugin in plugins.items()
            }
            return [plugins[name] for name in topological_sort(subgraph)]


_GLOBAL = Registry()


def register(plugin: Plugin) -> None:
    """Add plugin to the global registry; a repeated name is an error."""
    _GLOBAL._add_new(plugin)


def global_registry() -> Registry:
    """Return the process-wide registry."""
    return _GLOBAL