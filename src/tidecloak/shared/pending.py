"""Correlates externally dispatched operations with their async callbacks.

An operation handed to the system browser (login, encryption) comes back
later through a platform callback. Each one is tracked here by request id
until the matching callback arrives or its timer fires, whichever is first.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from tidecloak.auth.models.errors import PendingOperationTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0


@dataclass
class _PendingEntry:
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle


class PendingOperations:
    """Map of request id to (future, timeout) with exactly-once removal."""

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout
        self._entries: dict[str, _PendingEntry] = {}

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def start(self, request_id: str | None = None) -> tuple[str, asyncio.Future[Any]]:
        """Track a new operation.

        Args:
            request_id: Identifier to correlate on; generated when omitted

        Returns:
            Tuple of (request_id, future resolved by the matching callback)
        """
        request_id = request_id or str(uuid.uuid4())
        if request_id in self._entries:
            raise ValueError(f"Operation {request_id} is already pending")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        timer = loop.call_later(self.timeout, self._expire, request_id)
        self._entries[request_id] = _PendingEntry(future=future, timer=timer)
        logger.debug(f"Tracking pending operation {request_id}")
        return request_id, future

    def resolve(self, request_id: str, result: Any) -> bool:
        """Complete an operation. Returns False if it isn't pending anymore."""
        entry = self._pop(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_result(result)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        """Fail an operation. Returns False if it isn't pending anymore."""
        entry = self._pop(request_id)
        if entry is None:
            return False
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def reject_all(self, error: BaseException) -> None:
        for request_id in list(self._entries):
            self.reject(request_id, error)

    def discard(self, request_id: str) -> bool:
        """Stop tracking an operation without completing its future."""
        entry = self._pop(request_id)
        if entry is None:
            return False
        entry.future.cancel()
        return True

    def clear(self) -> None:
        for request_id in list(self._entries):
            self.discard(request_id)

    def _pop(self, request_id: str) -> _PendingEntry | None:
        entry = self._entries.pop(request_id, None)
        if entry is not None:
            entry.timer.cancel()
        return entry

    def _expire(self, request_id: str) -> None:
        if self.reject(request_id, PendingOperationTimeout(request_id, self.timeout)):
            logger.warning(
                f"Pending operation {request_id} timed out after {self.timeout}s"
            )
