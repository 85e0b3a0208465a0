"""
Runaway Guard — CLI

Inspect how the guard treats a call pattern without running any agents.

Usage:
    # Walk a chain: user → s1, then each session calls the next
    python -m guard.cli simulate s1 s2 s3 s4 s5 s6

    # Same, with hops 2 simulated seconds apart and a custom config
    python -m guard.cli simulate 1 2 1 2 1 --interval 2 --config guard_config.yaml

    # Show the collapsed stack for a raw chain
    python -m guard.cli collapse 1 2 1 3

    # Show the effective limits
    python -m guard.cli limits
"""

import argparse
import json
import sys

from guard.assigner import InboundCall, build_guard
from guard.chain import collapse_chain
from guard.config import ConfigError, load_limits
from guard.logging import configure_logging


class SimulatedClock:
    """Manually advanced clock for dry runs."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def _emit(payload: dict):
    print(json.dumps(payload), flush=True)


def cmd_simulate(args, limits) -> int:
    """Run every hop of the chain through a fresh guard."""
    clock = SimulatedClock()
    guard = build_guard(limits=limits, clock=clock)

    correlation_id = None
    previous = None
    for hop, session in enumerate(args.sessions, start=1):
        if previous is None:
            result = guard.check_call(InboundCall(to_session=session))
        else:
            with guard.registry.turn(previous, correlation_id):
                result = guard.check_call(
                    InboundCall(to_session=session, from_session=previous)
                )

        line = {"hop": hop, "from": previous, "to": session, **result.to_dict()}
        if result.allowed:
            correlation_id = result.correlation_id
            flow = guard.flow_metrics(correlation_id)
            line["effective_depth"] = flow["effective_depth"]
        _emit(line)

        if not result.allowed:
            return 2
        previous = session
        clock.advance(args.interval)

    return 0


def cmd_collapse(args, limits) -> int:
    stack = collapse_chain(args.sessions)
    _emit({"chain": args.sessions, "collapsed": stack, "depth": len(stack)})
    return 0


def cmd_limits(args, limits) -> int:
    _emit(limits.to_dict())
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Runaway Guard — inspect agent call chain decisions",
    )
    parser.add_argument("--config", help="Base config YAML (default: guard_config.yaml)")
    parser.add_argument("--env", default="", help="Config overlay profile")
    parser.add_argument("--log-level", default="WARNING",
                        help="DEBUG, INFO, WARNING, ERROR")

    subs = parser.add_subparsers(dest="command", help="Command")

    sim_p = subs.add_parser("simulate", help="Run a chain of session hops through the guard")
    sim_p.add_argument("sessions", nargs="+")
    sim_p.add_argument("--interval", "-i", type=float, default=1.0,
                       help="Simulated seconds between hops")

    col_p = subs.add_parser("collapse", help="Collapse a raw chain")
    col_p.add_argument("sessions", nargs="*")

    subs.add_parser("limits", help="Show effective limits")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    configure_logging(level=args.log_level)

    try:
        limits = load_limits(args.config, env=args.env)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.command == "simulate":
        return cmd_simulate(args, limits)
    elif args.command == "collapse":
        return cmd_collapse(args, limits)
    elif args.command == "limits":
        return cmd_limits(args, limits)
    return 1


if __name__ == "__main__":
    sys.exit(main())
