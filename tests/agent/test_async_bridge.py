"""Tests for agent.async_bridge.run_async."""

import asyncio
import threading

import pytest

from agent.async_bridge import run_async


async def _answer(value, delay=0.0):
    await asyncio.sleep(delay)
    return value, threading.current_thread().name


def test_runs_on_calling_thread_without_loop():
    value, thread = run_async(_answer(42))
    assert value == 42
    assert thread == threading.current_thread().name


def test_timeout_cancels():
    with pytest.raises(asyncio.TimeoutError):
        run_async(_answer(1, delay=5), timeout=0.05)


@pytest.mark.asyncio
async def test_inside_running_loop_uses_worker_thread():
    value, thread = run_async(_answer("nested"))
    assert value == "nested"
    assert thread.startswith("cge-run")
