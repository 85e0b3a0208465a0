"""
Runaway Guard — Call Chain Collapse

Reduces a raw sequence of visited sessions to its effective nesting
depth. A revisit means control returned to that session, so everything
pushed after its earlier visit is popped:

    [1, 2, 1]       → [1]
    [1, 2, 1, 2]    → [1, 2]
    [1, 2, 3]       → [1, 2, 3]
    [1, 2, 1, 3, 1] → [1]

Pure functions, no state. Rejection decisions live in guard.rules.
"""

from __future__ import annotations

from typing import Iterable


def collapse_chain(chain: Iterable[str]) -> list[str]:
    """Collapse a raw call chain into its effective call stack."""
    stack: list[str] = []
    positions: dict[str, int] = {}

    for session_id in chain:
        index = positions.get(session_id)
        if index is not None:
            for popped in stack[index + 1:]:
                del positions[popped]
            del stack[index + 1:]
        else:
            positions[session_id] = len(stack)
            stack.append(session_id)

    return stack


def effective_depth(chain: Iterable[str]) -> int:
    return len(collapse_chain(chain))


def unique_session_count(chain: Iterable[str]) -> int:
    return len(set(chain))
