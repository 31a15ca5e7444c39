"""
Line Metrics Engine - Async Helpers
"""

import asyncio
from typing import Any, Awaitable, List


async def gather_all(*awaitables: Awaitable) -> List[Any]:
    """
    Run awaitables concurrently and wait for every one of them to finish.

    Unlike a plain gather, a failing lookup never leaves its siblings running
    detached: the first exception, in argument order, is raised only after
    all results are in.
    """
    results = await asyncio.gather(*awaitables, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results
