# backend/singleflight.py
import asyncio
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Set, Tuple

logger = logging.getLogger(__name__)


class SingleFlight:
    """
    At most one running computation per key.

    The computation runs in its own task, so cancelling any caller
    (including the one that started it) does not cancel the shared call.
    Every caller that arrives while it runs receives the same outcome.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._calls)

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """Returns (value, leader) where leader is True for the caller that ran `factory`."""
        fut = self._calls.get(key)
        if fut is not None:
            logger.debug("Joining in-flight call %s", key[:12])
            return await asyncio.shield(fut), False

        fut = asyncio.get_running_loop().create_future()
        self._calls[key] = fut
        task = asyncio.create_task(factory())
        self._tasks.add(task)
        task.add_done_callback(partial(self._finish, key, fut))
        return await asyncio.shield(fut), True

    def _finish(self, key: str, fut: asyncio.Future, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._calls.get(key) is fut:
            del self._calls[key]
        if fut.done():
            return
        if task.cancelled():
            fut.cancel()
        elif task.exception() is not None:
            fut.set_exception(task.exception())
        else:
            fut.set_result(task.result())

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
