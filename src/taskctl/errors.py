"""Exception types raised by the taskctl core.

Core modules raise these; only the CLI converts them into
``click.ClickException`` so the same functions work from tests and scripts.
"""

from __future__ import annotations


class TaskctlError(Exception):
    """Base class for every taskctl failure."""


class ValidationError(TaskctlError):
    """A task-definition document or graph artifact failed validation.

    Carries every problem found, never just the first one.
    """

    def __init__(self, errors: list[str], *, header: str = "Invalid tasks.yaml") -> None:
        self.errors = list(errors)
        self.header = header
        super().__init__(f"{header}:\n- " + "\n- ".join(self.errors))


class UnknownTask(TaskctlError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Unknown task: {task_id}")


class NotDispatchable(TaskctlError):
    """The task cannot be handed out: wrong state or unresolved dependencies."""

    def __init__(self, message: str, *, unresolved: list[str] | None = None) -> None:
        self.unresolved = list(unresolved or [])
        super().__init__(message)


class InvalidTransition(TaskctlError):
    """A status transition was requested from an ineligible state."""


class StoreError(TaskctlError):
    """Persistence failure (I/O, SQLite, unreadable snapshot)."""


class CorruptStore(StoreError):
    """Stored status data exists but does not parse as valid records."""


class StoreBusy(StoreError):
    """Another process holds the status store for writing."""


class ConfigError(TaskctlError):
    pass


class PlanNotFound(TaskctlError):
    pass
