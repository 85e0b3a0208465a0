"""
Runaway Guard — Structured Logging

JSON line logging for every guard decision, plus the event sink the
guard components report through. Components never talk to a logging
library directly: they receive a GuardEventSink, and the default sink
(StructuredGuardLogger) turns events into JSON log entries.

Levels:
  - DEBUG: every allowed call and new flow
  - INFO: flow evictions
  - WARNING: rejected calls
  - CRITICAL: flow store invariant violations (the call is failed closed)

Usage:
    from guard.logging import configure_logging, StructuredGuardLogger

    configure_logging(level="INFO")
    sink = StructuredGuardLogger()
    guard = build_guard(sink=sink)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

ROOT_LOGGER = "runaway_guard"


# ═══════════════════════════════════════════════════════════════════
# JSON Formatter
# ═══════════════════════════════════════════════════════════════════

class JSONFormatter(logging.Formatter):
    """Formats log records as JSON lines."""

    def __init__(self, service_name: str = ROOT_LOGGER):
        super().__init__()
        self.service_name = service_name
        self.service_version = os.environ.get("GUARD_VERSION", "0.1.0")

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service.name": self.service_name,
            "service.version": self.service_version,
        }

        if hasattr(record, "structured"):
            entry.update(record.structured)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception.type"] = record.exc_info[0].__name__
            entry["exception.message"] = str(record.exc_info[1])

        return json.dumps(entry, default=str)


# ═══════════════════════════════════════════════════════════════════
# Log Configuration
# ═══════════════════════════════════════════════════════════════════

def configure_logging(
    level: str = "INFO",
    stream: Any = None,
    service_name: str = ROOT_LOGGER,
) -> logging.Logger:
    """
    Configure the runaway_guard logger with JSON output.

    Args:
        level: DEBUG, INFO, WARNING, ERROR
        stream: Output stream (default: sys.stderr)
        service_name: Service name in log entries

    Returns:
        The configured runaway_guard logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Children propagate here; keep exactly one handler
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter(service_name=service_name))
    handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_logger(name: str = "") -> logging.Logger:
    """Get a child logger under the runaway_guard namespace."""
    if name:
        return logging.getLogger(f"{ROOT_LOGGER}.{name}")
    return logging.getLogger(ROOT_LOGGER)


# ═══════════════════════════════════════════════════════════════════
# Event Sink
# ═══════════════════════════════════════════════════════════════════

class GuardEventSink(Protocol):
    """Callbacks the guard components report through."""

    def on_flow_created(self, correlation_id: str, start_time: float) -> None: ...

    def on_call_allowed(
        self,
        correlation_id: str,
        from_session: str | None,
        to_session: str,
        chain: Sequence[str],
        depth: int,
        sent_at: float | None = None,
    ) -> None: ...

    def on_call_rejected(
        self,
        correlation_id: str | None,
        from_session: str | None,
        to_session: str,
        reason: str,
        message: str,
        sent_at: float | None = None,
    ) -> None: ...

    def on_invariant_violation(
        self,
        correlation_id: str,
        stored_chain: Sequence[str] | None,
        proposed_chain: Sequence[str],
        error: str,
    ) -> None: ...

    def on_flow_evicted(self, correlation_id: str, age_seconds: float, trigger: str) -> None: ...


class NullSink:
    """Sink that discards every event."""

    def on_flow_created(self, correlation_id, start_time):
        pass

    def on_call_allowed(self, correlation_id, from_session, to_session, chain, depth, sent_at=None):
        pass

    def on_call_rejected(self, correlation_id, from_session, to_session, reason, message, sent_at=None):
        pass

    def on_invariant_violation(self, correlation_id, stored_chain, proposed_chain, error):
        pass

    def on_flow_evicted(self, correlation_id, age_seconds, trigger):
        pass


class StructuredGuardLogger:
    """
    Default GuardEventSink. Emits one JSON entry per guard event with
    an `action` field and the event's fields merged in.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self._logger = logger or get_logger("events")

    def _emit(self, level: int, action: str, **fields):
        if not self._logger.isEnabledFor(level):
            return
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="", lno=0, msg=action,
            args=(), exc_info=None,
        )
        record.structured = {"action": action, **fields}
        self._logger.handle(record)

    def on_flow_created(self, correlation_id: str, start_time: float) -> None:
        self._emit(
            logging.DEBUG, "flow_created",
            correlation_id=correlation_id,
            start_time=start_time,
        )

    def on_call_allowed(
        self,
        correlation_id: str,
        from_session: str | None,
        to_session: str,
        chain: Sequence[str],
        depth: int,
        sent_at: float | None = None,
    ) -> None:
        self._emit(
            logging.DEBUG, "call_allowed",
            correlation_id=correlation_id,
            from_session=from_session,
            to_session=to_session,
            chain_length=len(chain),
            effective_depth=depth,
            sent_at=sent_at,
        )

    def on_call_rejected(
        self,
        correlation_id: str | None,
        from_session: str | None,
        to_session: str,
        reason: str,
        message: str,
        sent_at: float | None = None,
    ) -> None:
        self._emit(
            logging.WARNING, "call_rejected",
            correlation_id=correlation_id,
            from_session=from_session,
            to_session=to_session,
            reason=reason,
            detail=message[:500],
            sent_at=sent_at,
        )

    def on_invariant_violation(
        self,
        correlation_id: str,
        stored_chain: Sequence[str] | None,
        proposed_chain: Sequence[str],
        error: str,
    ) -> None:
        self._emit(
            logging.CRITICAL, "flow_invariant_violation",
            correlation_id=correlation_id,
            stored_chain=list(stored_chain) if stored_chain is not None else None,
            proposed_chain=list(proposed_chain),
            error=error,
        )

    def on_flow_evicted(self, correlation_id: str, age_seconds: float, trigger: str) -> None:
        self._emit(
            logging.INFO, "flow_evicted",
            correlation_id=correlation_id,
            age_seconds=round(age_seconds, 1),
            trigger=trigger,
        )
