"""Linecraft - colouring-page generation bridge to an upstream job API."""

__version__ = "0.1.0"

from linecraft.core.config import LinecraftConfig, config
from linecraft.core.orchestrator import PollingOrchestrator, Task, TaskState
from linecraft.core.upstream import UpstreamClient

__all__ = [
    "LinecraftConfig",
    "config",
    "PollingOrchestrator",
    "Task",
    "TaskState",
    "UpstreamClient",
]
