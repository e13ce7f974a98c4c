from __future__ import annotations

import asyncio

from drivers.browser.events import (
    CaptureSucceeded,
    ErrorOccurred,
    EventBus,
    PageLoaded,
    SessionOpened,
)


def test_publish_reaches_subscribers_until_unsubscribed() -> None:
    bus = EventBus()
    seen: list[str] = []
    unsubscribe = bus.subscribe(lambda ev: seen.append(ev.name))
    bus.publish(SessionOpened(session_id="s1", profile="ephemeral"))
    unsubscribe()
    bus.publish(SessionOpened(session_id="s2", profile="ephemeral"))
    assert seen == ["SessionOpened"]


def test_failing_subscriber_does_not_block_others() -> None:
    bus = EventBus()
    seen: list[str] = []

    def _boom(_ev: object) -> None:
        raise RuntimeError("consumer bug")

    bus.subscribe(_boom)
    bus.subscribe(lambda ev: seen.append(ev.name))
    bus.publish(PageLoaded(url="https://example.com", duration_ms=5))
    assert seen == ["PageLoaded"]


def test_history_is_bounded_and_filterable() -> None:
    bus = EventBus(history=3)
    for i in range(5):
        bus.publish(CaptureSucceeded(kind="screenshot", size_bytes=i))
    bus.publish(ErrorOccurred(code="x", message="y"))
    recent = bus.recent()
    assert len(recent) == 3
    assert [ev.name for ev in recent][-1] == "Error"
    shots = bus.recent(name="CaptureSucceeded")
    assert [ev.size_bytes for ev in shots] == [3, 4]
    assert len(bus.recent(1)) == 1


def test_event_serializes_as_type_and_data() -> None:
    payload = PageLoaded(url="https://example.com", duration_ms=12, title="Example").to_dict()
    assert payload["type"] == "PageLoaded"
    assert payload["data"]["url"] == "https://example.com"
    assert payload["data"]["duration_ms"] == 12
    assert isinstance(payload["data"]["ts_ms"], int)


def test_stream_drops_oldest_when_reader_is_slow() -> None:
    async def _main() -> list[int]:
        bus = EventBus()
        stream = bus.stream(maxsize=2)
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)
        bus.publish(CaptureSucceeded(kind="screenshot", size_bytes=0))
        got = [(await first).size_bytes]
        for i in range(1, 5):
            bus.publish(CaptureSucceeded(kind="screenshot", size_bytes=i))
        got.append((await stream.__anext__()).size_bytes)
        got.append((await stream.__anext__()).size_bytes)
        await stream.aclose()
        return got

    # Events 1..4 arrived while nobody was reading; a queue of 2 keeps the newest.
    assert asyncio.run(_main()) == [0, 3, 4]
