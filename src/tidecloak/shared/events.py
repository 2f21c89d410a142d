"""Publish/subscribe bus for session lifecycle events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from tidecloak.auth.models.events import EVENT_TYPES, EventName, IAMEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[IAMEvent], "None | Awaitable[None]"]


class EventBus:
    """Delivers events to every registered handler in registration order.

    Plain handlers run inside ``emit``. Coroutine handlers are scheduled on
    the running loop, so ``emit`` never waits for them. A handler that raises
    is logged and skipped; the remaining handlers still run and the emitter
    never sees the exception.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: EventName, handler: EventHandler) -> EventBus:
        """Register an additional handler for ``event``.

        Returns:
            The bus itself, for chaining
        """
        if event not in EVENT_TYPES:
            raise ValueError(f"Unknown event: {event}")
        self._listeners.setdefault(event, []).append(handler)
        return self

    def off(self, event: EventName, handler: EventHandler) -> EventBus:
        """Remove a previously registered handler (matched by identity)."""
        if event in self._listeners:
            self._listeners[event] = [
                fn for fn in self._listeners[event] if fn is not handler
            ]
        return self

    def emit(self, event: IAMEvent) -> None:
        # Copy so handlers can unsubscribe themselves mid-delivery
        for handler in list(self._listeners.get(event.name, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(event.name, result)
            except Exception:
                logger.exception(f'Error in "{event.name}" handler')

    def _schedule(self, name: str, awaitable: Awaitable[None]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise
        task = asyncio.ensure_future(awaitable, loop=loop)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._on_handler_done(name, t))

    def _on_handler_done(self, name: str, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f'Error in "{name}" handler', exc_info=error)

    async def drain(self) -> None:
        """Wait for scheduled coroutine handlers to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
