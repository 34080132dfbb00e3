from __future__ import annotations

from abc import ABC, abstractmethod

from .models import Task, TaskDefinition


class TaskRuntime(ABC):
    """Where task containers actually run.

    Every call must be safe to repeat: launching returns a fresh container,
    stopping an already stopped task is a no-op.
    """

    @abstractmethod
    def launch(self, task: Task, definition: TaskDefinition, service_name: str) -> tuple[str, str]:
        """Start a container for ``task``; return (handle, endpoint).

        Must not wait for the task to become healthy. Raises LaunchFailure.
        """

    @abstractmethod
    def status(self, task: Task) -> str:
        """One of "pending", "running", "exited", or "unknown" when the runtime cannot answer."""

    @abstractmethod
    def probe(self, task: Task, definition: TaskDefinition) -> bool:
        """Run the definition's health check once; True on success.

        Must return or raise ProbeFailure within the health check timeout, so
        a hung check never holds a probe worker. The caller also enforces the
        timeout from the moment the probe starts.
        """

    @abstractmethod
    def stop(self, task: Task) -> None:
        ...

    def cpu_utilization(self, task: Task) -> float | None:
        """CPU use of the task as a percentage of its reservation, if known."""
        return None
