"""
Cost-attribution context: who pays for an LLM call.

The active CostContext (trace id + agent id) lives in a ContextVar. Worker
threads do not inherit it, so anything submitted to a pool must capture the
caller's context first and run through run_with_context(), which installs it
in the worker and restores the worker's previous value on every exit path.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class CostContext:
    trace_id: Optional[str] = None
    agent_id: Optional[int] = None


_current: contextvars.ContextVar[Optional[CostContext]] = contextvars.ContextVar(
    "contentguard_cost_context", default=None
)


def get_context() -> Optional[CostContext]:
    return _current.get()


def set_context(trace_id: Optional[str], agent_id: Optional[int] = None) -> None:
    _current.set(CostContext(trace_id=trace_id, agent_id=agent_id))


def clear_context() -> None:
    _current.set(None)


def _restore(previous: Optional[CostContext]) -> None:
    _current.set(previous)


@contextmanager
def bound_context(trace_id: Optional[str], agent_id: Optional[int] = None) -> Iterator[CostContext]:
    """Bind a context for the duration of a block, then restore the previous one."""
    previous = get_context()
    ctx = CostContext(trace_id=trace_id, agent_id=agent_id)
    _current.set(ctx)
    try:
        yield ctx
    finally:
        _restore(previous)


def run_with_context(captured: Optional[CostContext], fn: Callable[[], T]) -> T:
    """Run fn with `captured` installed; the previous context is always restored."""
    previous = get_context()
    _current.set(captured)
    try:
        return fn()
    finally:
        _restore(previous)
