from __future__ import annotations

import asyncio

import pytest

from drivers.browser.config import DriverConfig
from drivers.browser.errors import CaptureTimeout, OperationTimeout
from drivers.browser.events import EventBus
from drivers.browser.timeouts import DEFAULT_CAPTURE_TIMEOUT_S, TimeoutDefaults, TimeoutGuard


async def _value(v: int, delay: float = 0.0) -> int:
    await asyncio.sleep(delay)
    return v


async def _never() -> None:
    await asyncio.Event().wait()


def test_defaults_follow_config() -> None:
    defaults = TimeoutDefaults.from_config(DriverConfig(capture_timeout=3.0, navigation_timeout=7.0))
    assert defaults.capture_s == 3.0
    assert defaults.navigation_s == 7.0
    assert TimeoutDefaults().capture_s == DEFAULT_CAPTURE_TIMEOUT_S


def test_guard_returns_result_within_deadline() -> None:
    async def _main() -> int:
        guard = TimeoutGuard()
        return await guard.run(_value(42), timeout=1.0, operation="value")

    assert asyncio.run(_main()) == 42


def test_guard_without_deadline_waits() -> None:
    async def _main() -> int:
        return await TimeoutGuard().run(_value(7, 0.05), timeout=None, operation="slow")

    assert asyncio.run(_main()) == 7


def test_guard_raises_typed_timeout() -> None:
    async def _main() -> None:
        guard = TimeoutGuard()
        with pytest.raises(CaptureTimeout) as info:
            await guard.run(_never(), timeout=0.05, operation="Page.captureScreenshot", error_cls=CaptureTimeout)
        assert isinstance(info.value, OperationTimeout)
        assert info.value.to_dict()["code"] == CaptureTimeout.code
        assert guard.consecutive == 1

    asyncio.run(_main())


def test_work_errors_propagate_and_reset_counter() -> None:
    async def _fails() -> None:
        raise ValueError("bad")

    async def _main() -> None:
        guard = TimeoutGuard(threshold=5)
        with pytest.raises(OperationTimeout):
            await guard.run(_never(), timeout=0.01, operation="a")
        assert guard.consecutive == 1
        with pytest.raises(ValueError):
            await guard.run(_fails(), timeout=1.0, operation="b")
        assert guard.consecutive == 0
        assert guard.total_timeouts == 1

    asyncio.run(_main())


def test_threshold_publishes_event_and_calls_policy_hook() -> None:
    async def _main() -> tuple[list[str], EventBus, TimeoutGuard]:
        bus = EventBus()
        hooked: list[str] = []
        guard = TimeoutGuard(policy="recycle", threshold=2, events=bus, on_threshold=hooked.append)
        for _ in range(2):
            with pytest.raises(OperationTimeout):
                await guard.run(_never(), timeout=0.01, operation="Page.captureScreenshot")
        return hooked, bus, guard

    hooked, bus, guard = asyncio.run(_main())
    assert hooked == ["recycle"]
    repeated = bus.recent(name="TimeoutsRepeated")
    assert len(repeated) == 1
    assert repeated[0].consecutive == 2
    assert repeated[0].policy == "recycle"
    assert guard.consecutive == 0


def test_success_between_timeouts_prevents_threshold() -> None:
    async def _main() -> list[str]:
        hooked: list[str] = []
        guard = TimeoutGuard(threshold=2, on_threshold=hooked.append)
        with pytest.raises(OperationTimeout):
            await guard.run(_never(), timeout=0.01, operation="x")
        await guard.run(_value(1), timeout=1.0, operation="y")
        with pytest.raises(OperationTimeout):
            await guard.run(_never(), timeout=0.01, operation="x")
        return hooked

    assert asyncio.run(_main()) == []


def test_abandoned_work_keeps_running_and_its_error_is_consumed() -> None:
    async def _main() -> bool:
        gate = asyncio.Event()
        finished = asyncio.Event()

        async def _late_failure() -> None:
            await gate.wait()
            finished.set()
            raise RuntimeError("late")

        guard = TimeoutGuard()
        with pytest.raises(OperationTimeout):
            await guard.run(_late_failure(), timeout=0.01, operation="late")
        gate.set()
        await asyncio.wait_for(finished.wait(), timeout=1.0)
        await asyncio.sleep(0)
        return finished.is_set()

    assert asyncio.run(_main()) is True
