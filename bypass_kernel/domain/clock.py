"""
Clock -- Deterministic time abstraction and delayed-task registry.

Responsibility:
    Provides an injectable clock interface so that domain, engine, and service
    code never call ``datetime.now()`` directly, and a small registry of
    deadline tokens (``schedule_at``) the timeout scheduler uses to decide how
    long it may sleep.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).

Invariants enforced:
    - ``TimerRegistry.due(now)`` returns only tokens whose deadline <= now.

Failure modes:
    - DeterministicClock rejects naive datetimes (ValueError).

Audit relevance:
    Every timestamp recorded on a workflow (requested_at, responded_at,
    audit entry timestamps, deadlines) is traceable to an injected Clock.
"""

import heapq
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Hashable


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        All services that need current time receive a Clock instance via
        constructor injection.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime``.
        - ``now_utc()`` returns a UTC-normalized ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    def now_utc(self) -> datetime:
        """Get the current UTC time."""
        return self.now().astimezone(timezone.utc)


class SystemClock(Clock):
    """
    Production clock that returns actual system time.

    Non-goals:
        Not suitable for deterministic replay or testing.
    """

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until
          ``advance()`` or ``set_time()`` is called.
        - Safe to advance from one thread while others read it.
    """

    def __init__(self, fixed_time: datetime | None = None):
        start = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        self._fixed_time = start
        self._advance_seconds = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        with self._lock:
            self._fixed_time = time
            self._advance_seconds = 0.0

    def advance(self, seconds: float = 1) -> None:
        """Advance the clock by the specified seconds."""
        with self._lock:
            self._advance_seconds += seconds

    def advance_minutes(self, minutes: float) -> None:
        self.advance(minutes * 60)

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        self.advance(1)
        return self.now()


class TimerRegistry:
    """
    Process-wide registry of ``(deadline, token)`` pairs.

    Contract:
        ``schedule_at`` records that ``token`` wants attention at
        ``deadline``.  Re-scheduling a token replaces its earlier deadline.
        ``due(now)`` pops every token whose deadline has passed.

    Non-goals:
        Does not run callbacks itself.  The scheduler loop polls it; the
        store remains the source of truth for deadlines.
    """

    def __init__(self) -> None:
        self._heap: list[tuple[datetime, int, Hashable]] = []
        self._current: dict[Hashable, datetime] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def schedule_at(self, deadline: datetime, token: Hashable) -> None:
        with self._lock:
            self._current[token] = deadline
            self._counter += 1
            heapq.heappush(self._heap, (deadline, self._counter, token))

    def cancel(self, token: Hashable) -> None:
        with self._lock:
            self._current.pop(token, None)

    def due(self, now: datetime) -> list[Hashable]:
        """Pop and return all tokens with deadline <= now, earliest first."""
        fired: list[Hashable] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                deadline, _, token = heapq.heappop(self._heap)
                # Superseded or cancelled entries are skipped
                if self._current.get(token) != deadline:
                    continue
                del self._current[token]
                fired.append(token)
        return fired

    def next_deadline(self) -> datetime | None:
        with self._lock:
            while self._heap:
                deadline, _, token = self._heap[0]
                if self._current.get(token) == deadline:
                    return deadline
                heapq.heappop(self._heap)
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._current)
