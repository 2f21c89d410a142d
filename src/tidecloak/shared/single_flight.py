"""Exactly-once execution for async operations invoked re-entrantly.

UI frameworks may run the same startup effect twice. Authorization codes are
single-use, so a second exchange must never be sent: concurrent callers of
the same logical operation share one task instead.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Hashable

logger = logging.getLogger(__name__)


class SingleFlight:
    """Memoizes the in-flight task per operation key.

    While a task for ``key`` is running, ``run`` hands every caller the same
    result. Once it settles the key is free again. Callers are shielded from
    each other: cancelling one waiter doesn't cancel the shared task.
    """

    def __init__(self) -> None:
        self._in_flight: dict[Hashable, asyncio.Task[Any]] = {}

    def in_flight(self, key: Hashable) -> bool:
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``factory()`` once per key, sharing the result with concurrent callers.

        Args:
            key: Logical operation identifier
            factory: Zero-argument callable producing the awaitable to run

        Returns:
            The operation's result
        """
        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget(k, t))
        else:
            logger.debug(f"Joining in-flight operation {key!r}")
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: asyncio.Task[Any]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
