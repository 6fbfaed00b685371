"""Choosing a VM backend by name."""

from __future__ import annotations

from aivm.vm.base import VM
from aivm.vm.colima import ColimaVM
from aivm.vm.docker import DockerVM


class UnknownBackendError(ValueError):
    """Raised for a VM backend name that is not supported."""


def new_vm(backend: str, profile: str, state_dir: str, docker_image: str) -> VM:
    """Build the VM for backend: "colima" (the default when empty) or "docker"."""
    if backend in ("", "colima"):
        return ColimaVM(profile, state_dir)
    if backend == "docker":
        return DockerVM(profile, state_dir, docker_image)
    raise UnknownBackendError(f'unknown vm backend "{backend}"')