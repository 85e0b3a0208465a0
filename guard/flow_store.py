"""
Runaway Guard — Correlation Flow Store

In-memory map of correlation id → CorrelationFlow. The store is the
only owner of flow records; callers get immutable snapshots and change
a flow only through try_commit().

Concurrency:
  - Each correlation id has its own lock. Calls racing inside one flow
    (a session fanning out to two targets under one id) are serialized,
    so neither can commit on top of a stale chain.
  - Different correlation ids never wait on each other. A single
    bookkeeping lock guards the lock table and map structure and is
    only held for dict operations.

Expiry:
  - Lazy: every read of a flow first drops it if it is older than
    max_duration, so a reused id starts a fresh flow.
  - Periodic: evict_expired() walks every flow (see guard.sweeper).

Usage:
    store = FlowStore(max_duration=300, history_size=20)
    with store.locked(correlation_id):
        flow = store.get_or_create(correlation_id, now)
        ...
        store.try_commit(correlation_id, flow.raw_chain + (to_session,), now)
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Any, Callable, Iterator, MutableMapping, Sequence

from guard.chain import collapse_chain
from guard.logging import GuardEventSink, StructuredGuardLogger


class FlowInvariantError(RuntimeError):
    """Raised when a commit would corrupt a flow's accounting state."""

    def __init__(
        self,
        correlation_id: str,
        message: str,
        stored_chain: Sequence[str] | None = None,
        proposed_chain: Sequence[str] = (),
    ):
        self.correlation_id = correlation_id
        self.stored_chain = tuple(stored_chain) if stored_chain is not None else None
        self.proposed_chain = tuple(proposed_chain)
        super().__init__(f"Flow {correlation_id}: {message}")


# ═══════════════════════════════════════════════════════════════════
# Flow Record
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CorrelationFlow:
    """
    One traceable delegation episode.

    raw_chain is the only stored history. Everything else about the
    chain (collapsed stack, unique sessions, call count) is derived on
    read so it can never drift from the chain.
    """
    correlation_id: str
    start_time: float
    raw_chain: tuple[str, ...] = ()
    last_call_time: float | None = None
    call_timestamps: tuple[float, ...] = ()

    @property
    def collapsed_stack(self) -> list[str]:
        return collapse_chain(self.raw_chain)

    @property
    def unique_sessions(self) -> frozenset[str]:
        return frozenset(self.raw_chain)

    @property
    def call_count(self) -> int:
        return len(self.raw_chain)

    def age(self, now: float) -> float:
        return now - self.start_time

    def calls_in_window(self, now: float, window: float) -> int:
        """Committed calls inside the sliding window ending at now."""
        window_start = now - window
        return sum(1 for t in self.call_timestamps if t >= window_start)

    def metrics(self, now: float, rate_window: float = 60.0) -> dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "chain_length": self.call_count,
            "effective_depth": len(self.collapsed_stack),
            "unique_sessions": len(self.unique_sessions),
            "age_seconds": round(self.age(now), 3),
            "calls_in_window": self.calls_in_window(now, rate_window),
            "chain": list(self.raw_chain),
        }


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


# ═══════════════════════════════════════════════════════════════════
# Flow Store
# ═══════════════════════════════════════════════════════════════════

class FlowStore:
    """Concurrency-safe, expiring map of correlation flows."""

    def __init__(
        self,
        max_duration: float = 300.0,
        history_size: int = 20,
        clock: Callable[[], float] = time.monotonic,
        backing: MutableMapping[str, CorrelationFlow] | None = None,
        sink: GuardEventSink | None = None,
    ):
        self.max_duration = max_duration
        self.history_size = max(1, int(history_size))
        self._clock = clock
        self._flows: MutableMapping[str, CorrelationFlow] = backing if backing is not None else {}
        self._sink = sink or StructuredGuardLogger()
        self._locks: dict[str, _KeyLock] = {}
        self._table_lock = threading.Lock()

    # ── Per-key serialization ────────────────────────────────────

    @contextmanager
    def locked(self, correlation_id: str) -> Iterator[None]:
        """
        Hold the single-writer lock for one correlation id.

        Reentrant, so store methods called inside the block take the
        same lock again without deadlocking.
        """
        with self._table_lock:
            entry = self._locks.get(correlation_id)
            if entry is None:
                entry = self._locks[correlation_id] = _KeyLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._table_lock:
                entry.users -= 1
                if entry.users == 0 and self._locks.get(correlation_id) is entry:
                    del self._locks[correlation_id]

    # ── Reads ────────────────────────────────────────────────────

    def get(self, correlation_id: str, now: float | None = None) -> CorrelationFlow | None:
        """Return the live flow for an id, or None if absent or expired."""
        now = self._clock() if now is None else now
        with self.locked(correlation_id):
            return self._live_flow(correlation_id, now)

    def get_or_create(self, correlation_id: str, now: float | None = None) -> CorrelationFlow:
        """Return the live flow for an id, creating an empty one if needed."""
        now = self._clock() if now is None else now
        with self.locked(correlation_id):
            flow = self._live_flow(correlation_id, now)
            if flow is None:
                flow = CorrelationFlow(correlation_id=correlation_id, start_time=now)
                with self._table_lock:
                    self._flows[correlation_id] = flow
                self._sink.on_flow_created(correlation_id, now)
            return flow

    def _live_flow(self, correlation_id: str, now: float) -> CorrelationFlow | None:
        # Caller holds the key lock.
        flow = self._flows.get(correlation_id)
        if flow is not None and flow.age(now) > self.max_duration:
            self._remove(correlation_id, flow, now, trigger="lazy")
            return None
        return flow

    # ── Writes ───────────────────────────────────────────────────

    def try_commit(
        self,
        correlation_id: str,
        proposed_chain: Sequence[str],
        now: float | None = None,
    ) -> CorrelationFlow:
        """
        Replace a flow's chain with proposed_chain and record the call.

        proposed_chain must be the stored chain plus exactly one hop.
        Anything else is an accounting bug, not a policy outcome, and
        raises FlowInvariantError.
        """
        now = self._clock() if now is None else now
        proposed = tuple(proposed_chain)
        with self.locked(correlation_id):
            flow = self._flows.get(correlation_id)
            if flow is None:
                raise FlowInvariantError(
                    correlation_id, "commit on unknown flow",
                    proposed_chain=proposed,
                )
            stored = flow.raw_chain
            if len(proposed) != len(stored) + 1 or proposed[:len(stored)] != stored:
                raise FlowInvariantError(
                    correlation_id,
                    f"proposed chain of {len(proposed)} hops does not extend "
                    f"stored chain of {len(stored)} hops by one",
                    stored_chain=stored,
                    proposed_chain=proposed,
                )
            updated = replace(
                flow,
                raw_chain=proposed,
                last_call_time=now,
                call_timestamps=(flow.call_timestamps + (now,))[-self.history_size:],
            )
            with self._table_lock:
                self._flows[correlation_id] = updated
            return updated

    # ── Expiry ───────────────────────────────────────────────────

    def evict_expired(self, now: float | None = None) -> list[str]:
        """Drop every flow older than max_duration. Returns evicted ids."""
        now = self._clock() if now is None else now
        with self._table_lock:
            candidates = [
                cid for cid, flow in self._flows.items()
                if flow.age(now) > self.max_duration
            ]

        evicted = []
        for cid in candidates:
            with self.locked(cid):
                flow = self._flows.get(cid)
                # Re-check under the key lock: the id may have restarted.
                if flow is not None and flow.age(now) > self.max_duration:
                    self._remove(cid, flow, now, trigger="sweep")
                    evicted.append(cid)
        return evicted

    def _remove(self, correlation_id: str, flow: CorrelationFlow, now: float, trigger: str):
        with self._table_lock:
            self._flows.pop(correlation_id, None)
        self._sink.on_flow_evicted(correlation_id, flow.age(now), trigger)

    # ── Introspection ────────────────────────────────────────────

    def snapshot(self, now: float | None = None, rate_window: float = 60.0) -> dict[str, dict[str, Any]]:
        now = self._clock() if now is None else now
        with self._table_lock:
            flows = list(self._flows.values())
        return {f.correlation_id: f.metrics(now, rate_window) for f in flows}

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._flows)

    def __contains__(self, correlation_id: object) -> bool:
        with self._table_lock:
            return correlation_id in self._flows
