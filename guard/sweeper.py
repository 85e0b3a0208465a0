"""
Runaway Guard — Periodic Flow Sweeper

Lazy expiry only fires when an id is used again. Flows that are never
revisited would stay in memory forever, so a daemon thread calls
FlowStore.evict_expired() every `interval` seconds.

Usage:
    guard = build_guard()           # guard.sweeper uses limits.sweep_interval
    guard.sweeper.start()
    ...
    guard.sweeper.stop()

    # Standalone
    with FlowSweeper(store, interval=30):
        ...
"""

from __future__ import annotations

import threading

from guard.flow_store import FlowStore
from guard.logging import get_logger

logger = get_logger("sweeper")


class FlowSweeper:
    """Background eviction of expired flows."""

    def __init__(self, store: FlowStore, interval: float = 60.0):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.store = store
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.sweeps = 0

    def run_once(self) -> list[str]:
        evicted = self.store.evict_expired()
        self.sweeps += 1
        if evicted:
            logger.info("Sweep evicted %d expired flows (%d live)", len(evicted), len(self.store))
        return evicted

    def _loop(self):
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Flow sweep failed")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> FlowSweeper:
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="runaway-guard-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("Flow sweeper started (interval %.1fs)", self.interval)
        return self

    def stop(self, timeout: float | None = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Flow sweeper stopped after %d sweeps", self.sweeps)

    def __enter__(self) -> FlowSweeper:
        return self.start()

    def __exit__(self, *args):
        self.stop()
