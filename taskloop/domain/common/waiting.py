import asyncio
import time
from typing import Callable, Optional


async def wait_for(
    condition: Callable[[], bool],
    interval: float = 0.1,
    timeout: Optional[float] = None,
) -> None:
    """Poll `condition` every `interval` seconds until it holds

    Raises asyncio.TimeoutError when `timeout` elapses first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while not condition():
        if deadline is not None and time.monotonic() >= deadline:
            raise asyncio.TimeoutError()
        await asyncio.sleep(interval)
