import asyncio
import logging

import pytest

from tidecloak.auth.models.events import AuthSuccess, Logout, Ready
from tidecloak.shared.events import EventBus


class TestEventBus:
    def setup_method(self) -> None:
        self.bus = EventBus()

    def test_handlers_run_in_registration_order(self) -> None:
        # Arrange
        calls = []
        self.bus.on("ready", lambda e: calls.append(("first", e.authenticated)))
        self.bus.on("ready", lambda e: calls.append(("second", e.authenticated)))

        # Act
        self.bus.emit(Ready(True))

        # Assert
        assert calls == [("first", True), ("second", True)]

    def test_only_matching_event_is_delivered(self) -> None:
        # Arrange
        calls = []
        self.bus.on("logout", calls.append)

        # Act
        self.bus.emit(AuthSuccess())
        self.bus.emit(Logout())

        # Assert
        assert calls == [Logout()]

    def test_off_removes_handler(self) -> None:
        # Arrange
        calls = []
        handler = calls.append
        self.bus.on("authSuccess", handler)
        self.bus.off("authSuccess", handler)

        # Act
        self.bus.emit(AuthSuccess())

        # Assert
        assert calls == []

    def test_failing_handler_is_isolated(self, caplog) -> None:
        # Arrange
        calls = []

        def broken(event):
            raise RuntimeError("handler bug")

        self.bus.on("ready", broken)
        self.bus.on("ready", calls.append)

        # Act
        with caplog.at_level(logging.ERROR):
            self.bus.emit(Ready(False))

        # Assert
        assert calls == [Ready(False)]
        assert 'Error in "ready" handler' in caplog.text

    def test_handler_may_unsubscribe_itself(self) -> None:
        # Arrange
        calls = []

        def once(event):
            calls.append(event)
            self.bus.off("logout", once)

        self.bus.on("logout", once)

        # Act
        self.bus.emit(Logout())
        self.bus.emit(Logout())

        # Assert
        assert len(calls) == 1

    def test_unknown_event_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            self.bus.on("loggedIn", print)

    def test_on_returns_bus_for_chaining(self) -> None:
        assert self.bus.on("ready", print).on("logout", print) is self.bus


class TestAsyncHandlers:
    def setup_method(self) -> None:
        self.bus = EventBus()

    async def test_coroutine_handler_is_awaited(self) -> None:
        # Arrange
        seen = []

        async def on_ready(event):
            await asyncio.sleep(0)
            seen.append(event.authenticated)

        self.bus.on("ready", on_ready)

        # Act
        self.bus.emit(Ready(True))
        await self.bus.drain()

        # Assert
        assert seen == [True]

    async def test_emit_does_not_wait_for_coroutine_handlers(self) -> None:
        # Arrange
        order = []

        async def slow(event):
            await asyncio.sleep(0)
            order.append("async")

        self.bus.on("logout", slow)
        self.bus.on("logout", lambda e: order.append("sync"))

        # Act
        self.bus.emit(Logout())
        order.append("emitted")
        await self.bus.drain()

        # Assert
        assert order == ["sync", "emitted", "async"]

    async def test_failing_coroutine_handler_is_logged(self, caplog) -> None:
        # Arrange
        async def broken(event):
            raise RuntimeError("async handler bug")

        self.bus.on("authSuccess", broken)

        # Act
        with caplog.at_level(logging.ERROR):
            self.bus.emit(AuthSuccess())
            await self.bus.drain()

        # Assert
        assert 'Error in "authSuccess" handler' in caplog.text
        assert "async handler bug" in caplog.text

    def test_coroutine_handler_without_loop_is_logged(self, caplog) -> None:
        # Arrange
        async def on_ready(event):
            pass

        self.bus.on("ready", on_ready)

        # Act
        with caplog.at_level(logging.ERROR):
            self.bus.emit(Ready(False))

        # Assert
        assert 'Error in "ready" handler' in caplog.text
