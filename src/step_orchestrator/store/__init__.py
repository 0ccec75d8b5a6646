"""Task and artifact stores."""

from step_orchestrator.store.base import ArtifactManager, TaskManager
from step_orchestrator.store.memory import InMemoryArtifactManager, InMemoryTaskManager

__all__ = [
    "ArtifactManager",
    "InMemoryArtifactManager",
    "InMemoryTaskManager",
    "TaskManager",
]
