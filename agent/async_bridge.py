"""Run the async agent stack from synchronous callers.

The fire commands in cge_cli.main are plain functions; each one hands its
coroutine to ``run_async``. When the caller already sits inside an event
loop (a notebook, an embedding async application) the coroutine gets a
fresh loop on a worker thread instead.
"""

import asyncio
import concurrent.futures
from typing import Any, Awaitable, Optional


def _in_running_loop() -> bool:
    try:
        return asyncio.get_running_loop().is_running()
    except RuntimeError:
        return False


def run_async(coro: Awaitable[Any], timeout: Optional[float] = None) -> Any:
    """Run *coro* to completion and return its result.

    *timeout* bounds the whole call; on expiry the coroutine is cancelled
    and ``asyncio.TimeoutError`` is raised.
    """
    if timeout is not None:
        coro = asyncio.wait_for(coro, timeout)

    if not _in_running_loop():
        return asyncio.run(coro)

    with concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="cge-run") as pool:
        return pool.submit(asyncio.run, coro).result()
