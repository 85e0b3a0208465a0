"""
Runaway Guard — Correlation Assigner

Single entry point for every inbound call. Decides which flow the call
belongs to, runs the rules against that flow, and commits the hop only
when the rules allow it.

    inbound call
      → resolve(): explicit id, else dispatch context of from_session,
                   else (non-agent origin) mint a new id
      → FlowStore: load or create the flow (expired flows restart)
      → RulesEngine: ordered policy evaluation
      → FlowStore.try_commit() on allow; flow untouched on reject

Agent-originated calls (from_session set) must resolve to an existing
correlation id. User, applet and scheduler calls always start a new flow.

Usage:
    guard = build_guard(start_sweeper=True)
    result = guard.check_call(InboundCall(to_session="s1"))          # user
    with guard.registry.turn("s1", result.correlation_id):
        guard.check_call(InboundCall(to_session="s2", from_session="s1"))
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from guard.config import load_limits
from guard.dispatch_context import DispatchContextRegistry
from guard.flow_store import FlowInvariantError, FlowStore
from guard.logging import GuardEventSink, StructuredGuardLogger
from guard.rules import GuardLimits, GuardResult, RejectReason, RulesEngine
from guard.sweeper import FlowSweeper


def new_correlation_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class InboundCall:
    """
    Call descriptor supplied by the messaging layer before forwarding.

    timestamp is the sender's own clock reading. It is logged as sent_at
    but never used for guard decisions: flow ages, rate windows and
    eviction all run on the guard's injected clock.
    """
    to_session: str
    from_session: str | None = None
    explicit_correlation_id: str | None = None
    timestamp: float | None = None

    @property
    def agent_originated(self) -> bool:
        return self.from_session is not None


class GuardMetrics:
    """Thread-safe decision counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._allowed = 0
        self._rejected: dict[str, int] = {}

    def record(self, result: GuardResult):
        with self._lock:
            if result.allowed:
                self._allowed += 1
            else:
                key = result.reason.value if result.reason else "unknown"
                self._rejected[key] = self._rejected.get(key, 0) + 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "allowed": self._allowed,
                "rejected": sum(self._rejected.values()),
                "rejected_by_reason": dict(self._rejected),
            }


class CorrelationAssigner:
    """Resolves correlation ids and guards every call against runaway loops."""

    def __init__(
        self,
        store: FlowStore,
        rules: RulesEngine,
        registry: DispatchContextRegistry,
        clock: Callable[[], float] = time.monotonic,
        id_factory: Callable[[], str] = new_correlation_id,
        sink: GuardEventSink | None = None,
        sweeper: FlowSweeper | None = None,
    ):
        self.store = store
        self.rules = rules
        self.registry = registry
        self.sweeper = sweeper
        self.metrics = GuardMetrics()
        self._clock = clock
        self._id_factory = id_factory
        self._sink = sink or StructuredGuardLogger()

    def resolve(self, call: InboundCall) -> str | GuardResult:
        """
        Correlation id for the call, or a MISSING_CORRELATION rejection.

        Never touches the flow store.
        """
        if not call.agent_originated:
            return self._id_factory()

        correlation_id = call.explicit_correlation_id or self.registry.get(call.from_session)
        if not correlation_id:
            return GuardResult.reject(
                RejectReason.MISSING_CORRELATION,
                f"Agent call from {call.from_session} to {call.to_session} has no "
                f"correlation id and the session has no active dispatch context",
            )
        return correlation_id

    def check_call(self, call: InboundCall) -> GuardResult:
        """Resolve, evaluate and (on allow) commit one inbound call."""
        resolved = self.resolve(call)
        if isinstance(resolved, GuardResult):
            return self._rejected(call, resolved)
        correlation_id = resolved

        if call.agent_originated and call.from_session == call.to_session:
            return self._rejected(call, GuardResult.reject(
                RejectReason.SELF_CALL,
                f"Session {call.from_session} cannot call itself",
                correlation_id,
            ))

        now = self._clock()

        with self.store.locked(correlation_id):
            flow = self.store.get_or_create(correlation_id, now)
            result = self.rules.evaluate(flow, call.to_session, now,
                                         from_session=call.from_session)
            if not result.allowed:
                return self._rejected(call, result.with_correlation(correlation_id))

            proposed = flow.raw_chain + (call.to_session,)
            try:
                committed = self.store.try_commit(correlation_id, proposed, now)
            except FlowInvariantError as e:
                self._sink.on_invariant_violation(
                    correlation_id, e.stored_chain, e.proposed_chain, str(e),
                )
                result = GuardResult.reject(
                    RejectReason.INTERNAL_ERROR,
                    "Flow accounting failed; call blocked",
                    correlation_id,
                )
                self.metrics.record(result)
                return result

        result = GuardResult.allow(correlation_id)
        self.metrics.record(result)
        self._sink.on_call_allowed(
            correlation_id, call.from_session, call.to_session,
            committed.raw_chain, len(committed.collapsed_stack),
            sent_at=call.timestamp,
        )
        return result

    def _rejected(self, call: InboundCall, result: GuardResult) -> GuardResult:
        self.metrics.record(result)
        self._sink.on_call_rejected(
            result.correlation_id, call.from_session, call.to_session,
            result.reason.value, result.message,
            sent_at=call.timestamp,
        )
        return result

    def flow_metrics(self, correlation_id: str) -> dict[str, Any] | None:
        now = self._clock()
        flow = self.store.get(correlation_id, now)
        if flow is None:
            return None
        return flow.metrics(now, self.rules.limits.rate_window)


def build_guard(
    limits: GuardLimits | None = None,
    clock: Callable[[], float] = time.monotonic,
    id_factory: Callable[[], str] = new_correlation_id,
    sink: GuardEventSink | None = None,
    start_sweeper: bool = False,
) -> CorrelationAssigner:
    """
    Wire a store, rules engine, dispatch registry and sweeper into one guard.

    Loads limits from configuration when none are given. The sweeper runs
    every limits.sweep_interval seconds once started, either here with
    start_sweeper=True or later with guard.sweeper.start().
    """
    limits = limits or load_limits()
    sink = sink or StructuredGuardLogger()
    store = FlowStore(
        max_duration=limits.max_duration,
        history_size=limits.max_calls_per_window,
        clock=clock,
        sink=sink,
    )
    guard = CorrelationAssigner(
        store=store,
        rules=RulesEngine(limits),
        registry=DispatchContextRegistry(clock=clock),
        clock=clock,
        id_factory=id_factory,
        sink=sink,
        sweeper=FlowSweeper(store, interval=limits.sweep_interval),
    )
    if start_sweeper:
        guard.sweeper.start()
    return guard
