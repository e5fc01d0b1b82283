import asyncio

import pytest

from rrd.context import OperationContext
from rrd.errors import Cancelled


def test_background_context_never_done():
    ctx = OperationContext.background()
    assert not ctx.done()
    assert ctx.remaining() is None
    ctx.check("insert")


def test_cancelled_context_fails_check():
    ctx = OperationContext.background()
    ctx.cancel()
    with pytest.raises(Cancelled) as excinfo:
        ctx.check("insert", "42")
    assert excinfo.value.operation == "insert"
    assert excinfo.value.target == "42"
    assert "cancelled" in str(excinfo.value)


def test_expired_deadline_fails_check():
    ctx = OperationContext.with_timeout(0)
    assert ctx.expired()
    with pytest.raises(Cancelled, match="deadline"):
        ctx.check("range_query")


def test_run_returns_result_within_deadline():
    async def scenario():
        ctx = OperationContext.with_timeout(5)
        return await ctx.run("get", asyncio.sleep(0, result="ok"))

    assert asyncio.run(scenario()) == "ok"


def test_run_converts_timeout_to_cancelled():
    async def scenario():
        ctx = OperationContext.with_timeout(0.01)
        await ctx.run("scan", asyncio.sleep(1), "metrics")

    with pytest.raises(Cancelled) as excinfo:
        asyncio.run(scenario())
    assert excinfo.value.operation == "scan"
