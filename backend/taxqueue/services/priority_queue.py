"""In-memory priority index over pending job ids.

Ordering: priority descending, then created_at ascending, then insertion
order. The index is derived state - the job store stays the authority on
whether a job exists - and is rebuilt from pending records on startup.
"""
from __future__ import annotations

import heapq
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from taxqueue.models.base import ensure_utc


@dataclass(order=True)
class QueueEntry:
    sort_key: tuple = field(init=False, repr=False)
    priority: int = field(compare=False)
    created_at: datetime = field(compare=False)
    sequence: int = field(compare=False)
    job_id: str = field(compare=False)
    dependencies: frozenset[str] = field(compare=False, default=frozenset())

    def __post_init__(self) -> None:
        self.sort_key = (-self.priority, ensure_utc(self.created_at).timestamp(), self.sequence)


class PriorityJobQueue:
    """Pending job ids ordered for dispatch.

    Removal is lazy: removed ids stay in the heap until they surface and are
    discarded. A lock guards every operation so the queue stays safe when
    touched from executor threads as well as the event loop.
    """

    def __init__(self) -> None:
        self._heap: list[QueueEntry] = []
        self._entries: dict[str, QueueEntry] = {}
        self._counter = itertools.count()
        self._lock = threading.Lock()

    def enqueue(
        self,
        job_id: str,
        priority: int,
        created_at: datetime,
        dependencies: Iterable[str] = (),
    ) -> None:
        """Admit `job_id`. Re-admitting an id replaces its previous position."""
        with self._lock:
            entry = QueueEntry(
                priority=priority,
                created_at=created_at,
                sequence=next(self._counter),
                job_id=job_id,
                dependencies=frozenset(dependencies),
            )
            self._entries[job_id] = entry
            heapq.heappush(self._heap, entry)

    def dequeue(self, is_eligible: Callable[[QueueEntry], bool] | None = None) -> str | None:
        """Pop the best entry that passes `is_eligible`; blocked entries keep their place."""
        with self._lock:
            skipped: list[QueueEntry] = []
            found: QueueEntry | None = None
            while self._heap:
                entry = heapq.heappop(self._heap)
                if self._entries.get(entry.job_id) is not entry:
                    continue  # stale
                if is_eligible is None or is_eligible(entry):
                    found = entry
                    break
                skipped.append(entry)
            for entry in skipped:
                heapq.heappush(self._heap, entry)
            if found is None:
                return None
            del self._entries[found.job_id]
            return found.job_id

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self._entries.pop(job_id, None) is not None

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._entries

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def entries(self) -> list[QueueEntry]:
        """Live entries in dispatch order."""
        with self._lock:
            return sorted(self._entries.values())

    def pending_dependencies(self) -> set[str]:
        """Every job id some queued entry is waiting on."""
        with self._lock:
            deps: set[str] = set()
            for entry in self._entries.values():
                deps.update(entry.dependencies)
            return deps

    def peek_by_status(self) -> dict[str, int]:
        with self._lock:
            gated = sum(1 for entry in self._entries.values() if entry.dependencies)
            return {
                "queued": len(self._entries),
                "withDependencies": gated,
                "free": len(self._entries) - gated,
            }

    def clear(self) -> None:
        with self._lock:
            self._heap.clear()
            self._entries.clear()
