"""Tests for Subscription and Listeners."""

from __future__ import annotations

import asyncio

from dronewatch._internal.async_utils import cancel_task, run_async
from dronewatch._internal.listeners import Listeners, Subscription


class TestSubscription:
    def test_cancel_runs_release_once(self) -> None:
        calls: list[int] = []
        sub = Subscription(lambda: calls.append(1))
        assert sub.active
        sub.cancel()
        sub.cancel()
        assert calls == [1]
        assert not sub.active

    def test_context_manager(self) -> None:
        calls: list[int] = []
        with Subscription(lambda: calls.append(1)):
            pass
        assert calls == [1]


class TestListeners:
    async def test_emit_to_sync_and_async(self) -> None:
        listeners: Listeners[int] = Listeners()
        got: list[int] = []

        async def on_async(value: int) -> None:
            got.append(value * 10)

        listeners.add(got.append)
        listeners.add(on_async)
        await listeners.emit(2)
        assert got == [2, 20]

    async def test_failing_listener_is_isolated(self) -> None:
        listeners: Listeners[str] = Listeners()
        got: list[str] = []

        def broken(value: str) -> None:
            raise RuntimeError("boom")

        listeners.add(broken)
        listeners.add(got.append)
        await listeners.emit("x")
        assert got == ["x"]

    async def test_cancelled_subscription_stops_delivery(self) -> None:
        listeners: Listeners[int] = Listeners()
        got: list[int] = []
        sub = listeners.add(got.append)
        assert len(listeners) == 1
        sub.cancel()
        await listeners.emit(1)
        assert got == []
        assert len(listeners) == 0

    async def test_clear(self) -> None:
        listeners: Listeners[int] = Listeners()
        listeners.add(lambda v: None)
        listeners.clear()
        assert len(listeners) == 0


class TestAsyncUtils:
    def test_run_async_without_loop(self) -> None:
        async def value() -> int:
            return 5

        assert run_async(value()) == 5

    async def test_run_async_inside_loop(self) -> None:
        async def value() -> str:
            return "ok"

        assert run_async(value()) == "ok"

    async def test_cancel_task(self) -> None:
        task = asyncio.create_task(asyncio.sleep(10))
        await cancel_task(task)
        assert task.cancelled()

    async def test_cancel_task_noops(self) -> None:
        await cancel_task(None)
        done = asyncio.create_task(asyncio.sleep(0))
        await done
        await cancel_task(done)
        assert not done.cancelled()
