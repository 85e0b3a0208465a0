"""
Runaway Guard — Dispatch Context Registry

Binds an actively-processing session to the correlation id it should
propagate into any agent-to-agent call it makes during the turn. The
model never sees or manages the id: the dispatch loop sets it when a
turn starts, the agent tool reads it just before issuing a call, and
the dispatch loop clears it when the turn goes idle.

A session with no entry is not dispatching. A call from it is treated
as user or scheduler initiated, which mints a new correlation id.

Usage:
    registry = DispatchContextRegistry()
    with registry.turn(session_id, correlation_id):
        run_session_turn(...)   # tools call registry.get(session_id)
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from guard.logging import get_logger

logger = get_logger("dispatch_context")


@dataclass(frozen=True)
class DispatchContextEntry:
    session_id: str
    correlation_id: str
    started_at: float


class DispatchContextRegistry:
    """Per-session map of active dispatch contexts. One entry per session."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, DispatchContextEntry] = {}
        self._lock = threading.Lock()

    def set(self, session_id: str, correlation_id: str) -> DispatchContextEntry:
        entry = DispatchContextEntry(
            session_id=session_id,
            correlation_id=correlation_id,
            started_at=self._clock(),
        )
        with self._lock:
            previous = self._entries.get(session_id)
            self._entries[session_id] = entry
        if previous is not None:
            logger.warning(
                "Session %s already dispatching (correlation %s), overwriting with %s",
                session_id, previous.correlation_id, correlation_id,
            )
        return entry

    def get(self, session_id: str) -> str | None:
        """Correlation id for the session's active turn, or None."""
        with self._lock:
            entry = self._entries.get(session_id)
        return entry.correlation_id if entry else None

    def clear(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    @contextmanager
    def turn(self, session_id: str, correlation_id: str) -> Iterator[DispatchContextEntry]:
        """Set the context for one turn and clear it when the turn ends."""
        entry = self.set(session_id, correlation_id)
        try:
            yield entry
        finally:
            self.clear(session_id)

    # ── Introspection ────────────────────────────────────────────

    def is_busy(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._entries

    def entry(self, session_id: str) -> DispatchContextEntry | None:
        with self._lock:
            return self._entries.get(session_id)

    def active(self) -> dict[str, DispatchContextEntry]:
        with self._lock:
            return dict(self._entries)
