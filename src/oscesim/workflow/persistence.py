"""
Persistence Layer — Where simulation runs live between requests.

The engine only needs get/save by run id, a lookup by
(assignment, student) and the run's lock. InMemoryRunStore keeps
everything in the process; a database-backed store can replace it
behind the same methods.
"""

from __future__ import annotations

import asyncio

from oscesim.errors import RunNotFound
from oscesim.workflow.state import SimulationRun


class InMemoryRunStore:
    """Dict-backed store, one entry (and one lock) per run."""

    def __init__(self):
        self._runs: dict[str, SimulationRun] = {}
        self._by_attempt: dict[tuple[str, str], str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, run_id: str) -> SimulationRun:
        try:
            return self._runs[run_id]
        except KeyError:
            raise RunNotFound(run_id) from None

    def lock(self, run_id: str) -> asyncio.Lock:
        """The lock serializing mutations of one run. Lives exactly as long as the run."""
        try:
            return self._locks[run_id]
        except KeyError:
            raise RunNotFound(run_id) from None

    def find_attempt(self, assignment_id: str, student_id: str) -> SimulationRun | None:
        run_id = self._by_attempt.get((assignment_id, student_id))
        return self._runs.get(run_id) if run_id else None

    def save(self, run: SimulationRun) -> None:
        self._runs[run.id] = run
        self._by_attempt[(run.assignment_id, run.student_id)] = run.id
        self._locks.setdefault(run.id, asyncio.Lock())

    def __len__(self) -> int:
        return len(self._runs)
