"""VMs for AI coding agents, bootstrapped by dependency-ordered plugins."""

__version__ = "0.1.0"