"""
Runaway Guard — Rules Engine

Evaluates a proposed hop against a flow's history. Rules run in a fixed
order and the first failure wins, so the reason code for a given call
is deterministic:

  1. missing_correlation   — agent call without a correlation id
  2. depth_exceeded        — collapsed stack deeper than max_depth
  3. too_many_sessions     — more distinct sessions than max_unique_sessions
  4. flow_timeout          — flow older than max_duration
  5. rate_limit_exceeded   — calls in the trailing rate_window above max_calls_per_window
  6. total_calls_exceeded  — raw chain longer than max_total_calls

Structural checks come first, accounting checks last.

The engine only reads. The caller commits the hop to the FlowStore
after an allow, and leaves the flow untouched after a reject.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, replace
from typing import Any

from guard.chain import collapse_chain
from guard.flow_store import CorrelationFlow


# ═══════════════════════════════════════════════════════════════════
# Limits
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GuardLimits:
    """Runaway thresholds. Durations are in seconds."""
    max_depth: int = 5
    max_unique_sessions: int = 10
    max_duration: float = 300.0
    max_calls_per_window: int = 20
    rate_window: float = 60.0
    max_total_calls: int = 100
    sweep_interval: float = 60.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


DEFAULT_LIMITS = GuardLimits()


# ═══════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════

class RejectReason(str, enum.Enum):
    MISSING_CORRELATION = "missing_correlation"
    DEPTH_EXCEEDED = "depth_exceeded"
    TOO_MANY_SESSIONS = "too_many_sessions"
    FLOW_TIMEOUT = "flow_timeout"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TOTAL_CALLS_EXCEEDED = "total_calls_exceeded"
    SELF_CALL = "self_call"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class GuardResult:
    """Allow, or Reject with a stable reason code and a message."""
    allowed: bool
    reason: RejectReason | None = None
    message: str = ""
    correlation_id: str | None = None

    @classmethod
    def allow(cls, correlation_id: str | None = None) -> GuardResult:
        return cls(allowed=True, correlation_id=correlation_id)

    @classmethod
    def reject(
        cls,
        reason: RejectReason,
        message: str,
        correlation_id: str | None = None,
    ) -> GuardResult:
        return cls(allowed=False, reason=reason, message=message,
                   correlation_id=correlation_id)

    def with_correlation(self, correlation_id: str | None) -> GuardResult:
        return replace(self, correlation_id=correlation_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "correlation_id": self.correlation_id,
        }


# ═══════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════

class RulesEngine:
    """Ordered runaway policy evaluation."""

    def __init__(self, limits: GuardLimits | None = None):
        self._limits = limits or DEFAULT_LIMITS

    @property
    def limits(self) -> GuardLimits:
        return replace(self._limits)

    def evaluate(
        self,
        flow: CorrelationFlow,
        proposed_hop: str,
        now: float,
        from_session: str | None = None,
    ) -> GuardResult:
        """
        Decide whether proposed_hop may be appended to the flow.

        from_session marks the call as agent-originated, which makes a
        correlation id mandatory.
        """
        limits = self._limits
        cid = flow.correlation_id or None

        # Rule 1: correlation presence
        if from_session is not None and not flow.correlation_id:
            return GuardResult.reject(
                RejectReason.MISSING_CORRELATION,
                f"Agent call from {from_session} carries no correlation id",
            )

        proposed_chain = flow.raw_chain + (proposed_hop,)

        # Rule 2: effective depth
        depth = len(collapse_chain(proposed_chain))
        if depth > limits.max_depth:
            return GuardResult.reject(
                RejectReason.DEPTH_EXCEEDED,
                f"Effective call depth {depth} exceeds limit (max {limits.max_depth})",
                cid,
            )

        # Rule 3: unique sessions
        sessions = len(set(proposed_chain))
        if sessions > limits.max_unique_sessions:
            return GuardResult.reject(
                RejectReason.TOO_MANY_SESSIONS,
                f"Flow touches {sessions} sessions (max {limits.max_unique_sessions})",
                cid,
            )

        # Rule 4: flow duration
        age = flow.age(now)
        if age > limits.max_duration:
            return GuardResult.reject(
                RejectReason.FLOW_TIMEOUT,
                f"Flow timeout: {round(age)}s exceeds limit (max {round(limits.max_duration)}s)",
                cid,
            )

        # Rule 5: call rate, counting the proposed call
        calls_in_window = flow.calls_in_window(now, limits.rate_window) + 1
        if calls_in_window > limits.max_calls_per_window:
            return GuardResult.reject(
                RejectReason.RATE_LIMIT_EXCEEDED,
                f"Call rate limit exceeded: {calls_in_window} calls in "
                f"{round(limits.rate_window)}s (max {limits.max_calls_per_window})",
                cid,
            )

        # Rule 6: total calls
        if len(proposed_chain) > limits.max_total_calls:
            return GuardResult.reject(
                RejectReason.TOTAL_CALLS_EXCEEDED,
                f"Flow reached {len(proposed_chain)} calls (max {limits.max_total_calls})",
                cid,
            )

        return GuardResult.allow(cid)
