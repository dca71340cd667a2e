"""Task lifecycle reference used by ``taskctl help-status``."""

from __future__ import annotations

from typing import Any

STATUS_REFERENCE_SCHEMA = "taskctl_status_reference_v1"

TASK_STATUS_LIFECYCLE = [
    {
        "status": "todo",
        "meaning": "Not started. Ready to dispatch once every blocked_by task is done.",
        "typical_transitions": ["in_progress", "done", "blocked"],
    },
    {
        "status": "in_progress",
        "meaning": "Handed to a worker. Reset to todo by `taskctl init` if the session died.",
        "typical_transitions": ["done", "blocked", "todo"],
    },
    {
        "status": "done",
        "meaning": "Worker reported success; dependents may now become ready.",
        "typical_transitions": [],
    },
    {
        "status": "blocked",
        "meaning": (
            "Worker reported blocked or failed. Returns to todo automatically once every "
            "blocker that names a task is done."
        ),
        "typical_transitions": ["todo"],
    },
]

COMPLETION_RESULTS = [
    {"result": "done", "state": "done"},
    {"result": "blocked", "state": "blocked"},
    {"result": "failed", "state": "blocked"},
]


def get_status_reference() -> dict[str, Any]:
    """Return a machine-parseable lifecycle reference payload."""
    return {
        "schema": STATUS_REFERENCE_SCHEMA,
        "lifecycles": [
            {
                "type": "task",
                "label": "Task lifecycle",
                "description": "States recorded in task.status.json and task.db.",
                "statuses": [
                    {
                        "status": status["status"],
                        "meaning": status["meaning"],
                        "typical_transitions": list(status["typical_transitions"]),
                    }
                    for status in TASK_STATUS_LIFECYCLE
                ],
            }
        ],
        "completion_results": [dict(item) for item in COMPLETION_RESULTS],
    }
