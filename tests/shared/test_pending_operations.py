import asyncio

import pytest

from tidecloak.auth.models.errors import PendingOperationTimeout
from tidecloak.shared.pending import PendingOperations


class TestPendingOperations:
    async def test_resolve_completes_future_once(self) -> None:
        # Arrange
        pending = PendingOperations(timeout=5)
        request_id, future = pending.start()

        # Act
        first = pending.resolve(request_id, "result")
        second = pending.resolve(request_id, "again")

        # Assert
        assert first is True
        assert second is False
        assert await future == "result"
        assert request_id not in pending

    async def test_explicit_request_id(self) -> None:
        pending = PendingOperations()
        request_id, _ = pending.start("login-1")

        assert request_id == "login-1"
        with pytest.raises(ValueError, match="already pending"):
            pending.start("login-1")
        pending.clear()

    async def test_generated_ids_are_unique(self) -> None:
        pending = PendingOperations()
        first, _ = pending.start()
        second, _ = pending.start()

        assert first != second
        assert len(pending) == 2
        pending.clear()

    async def test_timeout_rejects_and_removes(self) -> None:
        # Arrange
        pending = PendingOperations(timeout=0.01)
        request_id, future = pending.start()

        # Act & Assert
        with pytest.raises(PendingOperationTimeout) as exc_info:
            await future
        assert exc_info.value.request_id == request_id
        assert request_id not in pending
        assert pending.resolve(request_id, "late") is False

    async def test_resolve_before_timeout_cancels_timer(self) -> None:
        # Arrange
        pending = PendingOperations(timeout=0.01)
        request_id, future = pending.start()

        # Act
        pending.resolve(request_id, 1)
        await asyncio.sleep(0.02)

        # Assert
        assert future.result() == 1

    async def test_reject_all(self) -> None:
        # Arrange
        pending = PendingOperations()
        _, first = pending.start()
        _, second = pending.start()

        # Act
        pending.reject_all(RuntimeError("closed"))

        # Assert
        for future in (first, second):
            with pytest.raises(RuntimeError, match="closed"):
                await future
        assert len(pending) == 0

    async def test_discard_cancels_future(self) -> None:
        pending = PendingOperations()
        request_id, future = pending.start()

        assert pending.discard(request_id) is True
        assert future.cancelled()
        assert pending.discard(request_id) is False
