"""Async utilities for calling external system clients from sync passes."""

import asyncio
import inspect
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CallLimiter:
    """Bounds and times out calls to external clients.

    Client methods may be plain functions (run in a worker thread) or
    coroutine functions (awaited directly). When ``max_parallel`` is set,
    at most that many calls are in flight across every pass sharing the
    limiter. When ``timeout`` is set, a call exceeding it raises
    ``asyncio.TimeoutError``, which the caller treats as that call's failure.
    """

    def __init__(
        self,
        max_parallel: int | None = None,
        timeout: float | None = None,
    ) -> None:
        self._semaphore = (
            asyncio.Semaphore(max_parallel) if max_parallel else None
        )
        self.max_parallel = max_parallel
        self.timeout = timeout
        logger.debug(
            "Call limiter initialized: max_parallel=%s timeout=%s",
            max_parallel,
            timeout,
        )

    async def call(
        self, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        """Invoke *func* under the limiter.

        Args:
            func: Client method, sync or async.
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result of func(*args, **kwargs)
        """
        if self._semaphore is None:
            return await self._invoke(func, *args, **kwargs)
        async with self._semaphore:
            return await self._invoke(func, *args, **kwargs)

    async def _invoke(
        self, func: Callable[..., Any], *args: Any, **kwargs: Any
    ) -> Any:
        if inspect.iscoroutinefunction(func):
            awaitable = func(*args, **kwargs)
        else:
            awaitable = asyncio.to_thread(func, *args, **kwargs)
        if self.timeout is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=self.timeout)
