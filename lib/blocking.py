import asyncio
import functools
from typing import Any, Callable, Optional


async def run_blocking(func: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
    """Run a blocking SDK call in the default executor, bounded by timeout.

    Raises asyncio.TimeoutError when the call does not finish in time. The
    worker thread is not interrupted; its result is discarded.
    """
    loop = asyncio.get_running_loop()
    call = functools.partial(func, *args, **kwargs)
    return await asyncio.wait_for(loop.run_in_executor(None, call), timeout=timeout)
