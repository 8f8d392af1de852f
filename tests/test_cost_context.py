# tests/test_cost_context.py
"""
Cost-attribution context capture and restore across worker threads.
"""

from concurrent.futures import ThreadPoolExecutor

import pytest

from contentguard.engine.cost_context import (
    CostContext,
    bound_context,
    clear_context,
    get_context,
    run_with_context,
    set_context,
)


@pytest.fixture(autouse=True)
def no_context():
    clear_context()
    yield
    clear_context()


class TestCostContext:

    def test_set_get_clear(self):
        set_context("trace-1", 3)
        assert get_context() == CostContext("trace-1", 3)
        clear_context()
        assert get_context() is None

    def test_bound_context_restores_previous(self):
        set_context("outer", 1)
        with bound_context("inner", 2):
            assert get_context().trace_id == "inner"
        assert get_context() == CostContext("outer", 1)

    def test_bound_context_restores_on_error(self):
        with pytest.raises(ValueError):
            with bound_context("inner", 2):
                raise ValueError("boom")
        assert get_context() is None

    def test_worker_threads_do_not_inherit(self):
        set_context("caller", 1)
        with ThreadPoolExecutor(max_workers=1) as pool:
            assert pool.submit(get_context).result() is None

    def test_run_with_context_installs_and_restores(self):
        captured = CostContext("caller", 1)
        with ThreadPoolExecutor(max_workers=1) as pool:
            seen = pool.submit(run_with_context, captured, get_context).result()
            after = pool.submit(get_context).result()
        assert seen == captured
        assert after is None, "worker must not keep the caller's context"

    def test_run_with_context_restores_on_error(self):
        def fail():
            raise RuntimeError("attempt failed")

        set_context("worker-own", 9)
        with pytest.raises(RuntimeError):
            run_with_context(CostContext("caller", 1), fail)
        assert get_context() == CostContext("worker-own", 9)
