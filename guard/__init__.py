"""
Runaway Guard

Correlation tracking and rule enforcement for agent-to-agent calls.
Every agent-initiated call passes through CorrelationAssigner.check_call()
before dispatch; runaway loops are rejected with a typed reason.
"""

from guard.assigner import CorrelationAssigner, GuardMetrics, InboundCall, build_guard, new_correlation_id
from guard.chain import collapse_chain, effective_depth, unique_session_count
from guard.dispatch_context import DispatchContextEntry, DispatchContextRegistry
from guard.flow_store import CorrelationFlow, FlowInvariantError, FlowStore
from guard.rules import DEFAULT_LIMITS, GuardLimits, GuardResult, RejectReason, RulesEngine
from guard.sweeper import FlowSweeper

__all__ = [
    "CorrelationAssigner",
    "GuardMetrics",
    "InboundCall",
    "build_guard",
    "new_correlation_id",
    "collapse_chain",
    "effective_depth",
    "unique_session_count",
    "DispatchContextEntry",
    "DispatchContextRegistry",
    "CorrelationFlow",
    "FlowInvariantError",
    "FlowStore",
    "DEFAULT_LIMITS",
    "GuardLimits",
    "GuardResult",
    "RejectReason",
    "RulesEngine",
    "FlowSweeper",
]
