"""Ephemeral database container management."""

from .docker import DockerCLI, DockerCommandError, parse_state
from .manager import RuntimeManager

__all__ = ["DockerCLI", "DockerCommandError", "RuntimeManager", "parse_state"]
