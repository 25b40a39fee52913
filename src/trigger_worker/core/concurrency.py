"""
Concurrent reads that do not outlive their caller.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List


async def gather_or_cancel(*aws: Awaitable[Any]) -> List[Any]:
    """
    Run awaitables concurrently and return their results in order.

    Unlike a plain asyncio.gather, when one of them raises the others are
    cancelled and waited for before the error propagates, so none keeps
    retrying in the background after the caller gave up.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
