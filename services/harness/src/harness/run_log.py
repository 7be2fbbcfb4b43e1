"""
Append-only run log for ASR Bench Lab.

Holds every :class:`~bench_common.models.Run` emitted during a session,
in completion order. Records are immutable; the log only grows, or is
cleared as a whole.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator

from bench_common.models import Run


class RunLog:
    """Ordered, append-only collection of runs."""

    def __init__(self, runs: Iterable[Run] = ()) -> None:
        self._runs: list[Run] = list(runs)

    def append(self, run: Run) -> None:
        self._runs.append(run)

    def extend(self, runs: Iterable[Run]) -> None:
        self._runs.extend(runs)

    def clear(self) -> None:
        self._runs.clear()

    def snapshot(self) -> list[Run]:
        """Return a copy of the current contents."""
        return list(self._runs)

    def batch(self, batch_id: str) -> list[Run]:
        return [run for run in self._runs if run.batch_id == batch_id]

    def __len__(self) -> int:
        return len(self._runs)

    def __iter__(self) -> Iterator[Run]:
        return iter(list(self._runs))

    def __getitem__(self, index: int) -> Run:
        return self._runs[index]
