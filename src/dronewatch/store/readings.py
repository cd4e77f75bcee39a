"""Append-only reading log, one bounded deque per agent."""

from __future__ import annotations

import heapq
import itertools
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator
    from datetime import datetime

    from dronewatch.models.agent import AgentStatus, Reading


class ReadingStore:
    """Per-agent reading log supporting range and most-recent queries.

    Readings are kept in arrival order. Once an agent holds
    *max_per_agent* readings the oldest are pruned. Query results are
    ordered newest first by timestamp; ties keep the later arrival first.
    """

    def __init__(self, *, max_per_agent: int = 10_000) -> None:
        self._max_per_agent = max_per_agent
        self._logs: dict[str, deque[Reading]] = {}
        self._appended = 0

    @property
    def appended_count(self) -> int:
        """Total readings appended since construction (including pruned ones)."""
        return self._appended

    def agent_ids(self) -> list[str]:
        return sorted(self._logs)

    def append(self, reading: Reading) -> None:
        log = self._logs.get(reading.agent_id)
        if log is None:
            log = deque(maxlen=self._max_per_agent)
            self._logs[reading.agent_id] = log
        log.append(reading)
        self._appended += 1

    def count(self, agent_id: str | None = None) -> int:
        if agent_id is None:
            return sum(len(log) for log in self._logs.values())
        return len(self._logs.get(agent_id, ()))

    def most_recent(self, agent_id: str | None = None, limit: int = 100) -> list[Reading]:
        """Return up to *limit* readings, newest first, for one agent or all."""
        return self.query(agent_id=agent_id, limit=limit)

    def range(
        self,
        agent_id: str,
        since: datetime,
        until: datetime | None = None,
        limit: int = 500,
    ) -> list[Reading]:
        """Return readings for *agent_id* with ``since <= timestamp`` (and ``<= until``)."""
        return self.query(agent_id=agent_id, since=since, until=until, limit=limit)

    def query(
        self,
        *,
        agent_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        status: AgentStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Reading]:
        """Filter readings by agent, time window and status; newest first.

        *offset* skips that many matches before *limit* is applied.
        """
        if limit <= 0:
            return []
        start = max(offset, 0)
        matching = self._matching(agent_id, since, until, status)
        return list(itertools.islice(matching, start, start + limit))

    def count_matching(
        self,
        *,
        agent_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        status: AgentStatus | None = None,
    ) -> int:
        """Number of readings :meth:`query` would match with no limit or offset."""
        return sum(1 for _ in self._matching(agent_id, since, until, status))

    def _matching(
        self,
        agent_id: str | None,
        since: datetime | None,
        until: datetime | None,
        status: AgentStatus | None,
    ) -> Iterator[Reading]:
        def matches(reading: Reading) -> bool:
            if since is not None and reading.timestamp < since:
                return False
            if until is not None and reading.timestamp > until:
                return False
            return status is None or reading.status == status

        streams = [self._newest_first(log) for log in self._selected_logs(agent_id)]
        merged = heapq.merge(*streams, key=lambda r: r.timestamp, reverse=True)
        return filter(matches, merged)

    def _selected_logs(self, agent_id: str | None) -> Iterable[deque[Reading]]:
        if agent_id is None:
            return self._logs.values()
        log = self._logs.get(agent_id)
        return [log] if log is not None else []

    @staticmethod
    def _newest_first(log: deque[Reading]) -> Iterator[Reading]:
        # Stable sort of the reversed log: equal timestamps keep later arrivals first.
        return iter(sorted(reversed(log), key=lambda r: r.timestamp, reverse=True))
