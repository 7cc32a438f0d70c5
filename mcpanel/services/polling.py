import asyncio
import time
from typing import Awaitable, Callable


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    *,
    interval: float,
    timeout: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Run ``check`` every ``interval`` seconds until it passes or ``timeout`` elapses.

    The check always runs at least once. Returns whether it passed.
    """
    deadline = clock() + timeout
    while True:
        if await check():
            return True
        if clock() + interval >= deadline:
            return False
        await sleep(interval)
