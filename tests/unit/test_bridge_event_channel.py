# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

import pytest

from adapters.channel import BridgeEventChannel
from adapters.events import ASRPartial, BridgeEventType
from adapters.state import Service


def partial(text: str) -> ASRPartial:
    return ASRPartial(event_type=BridgeEventType.ASR_PARTIAL, ts_ms=0, service=Service.ASR, text=text)


def test_fifo_and_end_of_stream():
    async def scenario():
        ch = BridgeEventChannel()
        ch.emit(partial("a"))
        ch.emit(partial("b"))
        ch.close()
        return [e.text async for e in ch]

    assert asyncio.run(scenario()) == ["a", "b"]


def test_overflow_drops_new_event_and_counts():
    async def scenario():
        ch = BridgeEventChannel(max_events=2)
        assert ch.emit(partial("a"))
        assert ch.emit(partial("b"))
        assert not ch.emit(partial("c"))
        return ch

    ch = asyncio.run(scenario())
    assert ch.dropped == 1
    assert [e.text for e in ch.drain_nowait()] == ["a", "b"]


def test_emit_after_close_is_rejected():
    async def scenario():
        ch = BridgeEventChannel()
        ch.close()
        ch.close()
        accepted = ch.emit(partial("late"))
        first = await ch.get()
        second = await ch.get()
        return accepted, first, second, len(ch)

    accepted, first, second, length = asyncio.run(scenario())
    assert accepted is False
    assert first is None
    assert second is None
    assert length == 0


def test_reader_waits_for_events():
    async def scenario():
        ch = BridgeEventChannel()
        reader = asyncio.create_task(ch.get())
        await asyncio.sleep(0)
        assert not reader.done()
        ch.emit(partial("x"))
        return await reader

    assert asyncio.run(scenario()).text == "x"


def test_max_events_must_be_positive():
    with pytest.raises(ValueError):
        BridgeEventChannel(max_events=0)
