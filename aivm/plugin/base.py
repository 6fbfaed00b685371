"""The plugin contract and the environment handed to plugins."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TextIO


class VMRunner(Protocol):
    """The part of a VM that plugins need: running a script inside it."""

    def run(self, script: str, env: Mapping[str, str] | None) -> None:
        """Run script in the VM, raising on failure."""
        ...


@dataclass
class InstallEnv:
    """Everything a plugin receives during bootstrap."""

    config: Mapping[str, Any] = field(default_factory=dict)
    state_dir: str = ""
    log: TextIO | None = None
    dry_run: bool = False
    vm: VMRunner | None = None

    def config_string(self, key: str, fallback: str) -> str:
        """Return a non-empty string config value, or fallback."""
        value = self.config.get(key)
        if isinstance(value, str) and value:
            return value
        return fallback

    def config_string_slice(self, key: str) -> list[str] | None:
        """Return the string items of a list config value, or None if absent."""
        value = self.config.get(key)
        if isinstance(value, (list, tuple)):
            return [item for item in value if isinstance(item, str)]
        return None


class Plugin(ABC):
    """A bootstrap component.

    Subclasses provide ``name`` and may override ``description``,
    ``dependencies``, ``agents`` (empty means all providers) and
    ``path_entries`` (directories to add to PATH).
    """

    name: str
    description: str = ""
    dependencies: Sequence[str] = ()
    agents: Sequence[str] = ()
    path_entries: Sequence[str] = ()

    @abstractmethod
    def skip_if(self, env: InstallEnv) -> bool:
        """Return True when the plugin is already set up."""

    @abstractmethod
    def setup(self, env: InstallEnv) -> None:
        """Install and configure the plugin, raising on failure."""