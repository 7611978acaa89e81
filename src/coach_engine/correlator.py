"""In-flight request table for the cloud engine.

Entries live from send until a terminal response (or teardown). Nothing
here expires entries on a timer; callers bound their own waits.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field

from coach_engine.engine import Purpose


@dataclass
class PendingTask:
    task_id: str
    purpose: Purpose
    issued_at: float = field(default_factory=time.monotonic)
    future: asyncio.Future | None = None


def generate_task_id() -> str:
    return uuid.uuid4().hex[:9]


class RequestCorrelator:
    def __init__(self):
        self._tasks: dict[str, PendingTask] = {}

    def register(self, purpose: Purpose, future: asyncio.Future | None = None) -> PendingTask:
        task_id = generate_task_id()
        while task_id in self._tasks:
            task_id = generate_task_id()
        task = PendingTask(task_id=task_id, purpose=purpose, future=future)
        self._tasks[task_id] = task
        return task

    def get(self, task_id: str) -> PendingTask | None:
        return self._tasks.get(task_id)

    def resolve(self, task_id: str) -> PendingTask | None:
        """Remove and return the task, or None if unknown (stale)."""
        return self._tasks.pop(task_id, None)

    def latest(self) -> PendingTask | None:
        if not self._tasks:
            return None
        return next(reversed(self._tasks.values()))

    def clear(self) -> list[PendingTask]:
        """Drop every entry, returning what was dropped."""
        dropped = list(self._tasks.values())
        self._tasks.clear()
        return dropped

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)
