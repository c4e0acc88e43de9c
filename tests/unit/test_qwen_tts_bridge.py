# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio

from adapters.events import BridgeError, TTSAudioChunk, TTSSessionInfo
from adapters.state import BridgeState
from adapters.tts.qwen_realtime import QwenTTSBridge, TtsSettings
from fakes import FakeConnector, settle

TTS_URL = "wss://dashscope.example/api-ws/v1/realtime"


def make_bridge(connector, **settings):
    return QwenTTSBridge(
        session_id="s1",
        settings=TtsSettings(**settings),
        api_key="sk-test",
        base_url=TTS_URL,
        connect_fn=connector,
    )


def test_session_update_then_ack_overrides_sample_rate():
    async def scenario():
        connector = FakeConnector()
        bridge = make_bridge(connector, voice="Ethan", instructions="calm", optimize_instructions=True)
        await bridge.connect()
        ws = connector.sockets[0]
        await settle()
        update = ws.sent_json()[0]

        assert bridge.state is BridgeState.HANDSHAKING
        assert not await bridge.wait_ready(timeout=0.01)
        ws.push({"type": "session.created", "session": {"sample_rate": 16000}})
        assert await bridge.wait_ready(timeout=1)
        state = bridge.state
        await bridge.close()
        return connector, update, state, bridge, [e async for e in bridge.events]

    connector, update, state, bridge, events = asyncio.run(scenario())

    url, headers = connector.calls[0]
    assert url == TTS_URL + "?model=qwen-tts-realtime"
    assert headers["Authorization"] == "Bearer sk-test"
    assert headers["OpenAI-Beta"] == "realtime=v1"

    assert update["type"] == "session.update"
    assert update["session"] == {
        "voice": "Ethan",
        "mode": "server_commit",
        "response_format": "pcm",
        "sample_rate": 24000,
        "instructions": "calm",
        "optimize_instructions": True,
    }

    assert state is BridgeState.READY
    assert bridge.sample_rate == 16000
    (info,) = events
    assert isinstance(info, TTSSessionInfo)
    assert info.sample_rate == 16000


def test_text_commands_queue_until_ack_and_flush_in_order():
    async def scenario():
        connector = FakeConnector()
        bridge = make_bridge(connector)
        await bridge.connect()
        ws = connector.sockets[0]

        bridge.append_text("Hello ")
        bridge.append_text("")
        bridge.append_text("world")
        bridge.commit()
        await settle()
        before_ack = ws.sent_types()

        ws.push({"type": "session.updated", "session": {}})
        await settle()
        bridge.finish()
        await settle()
        await bridge.close()
        return before_ack, ws

    before_ack, ws = asyncio.run(scenario())
    assert before_ack == ["session.update"]
    assert ws.sent_types() == [
        "session.update",
        "input_text_buffer.append",
        "input_text_buffer.append",
        "input_text_buffer.commit",
        "session.finish",
    ]
    assert [m.get("text") for m in ws.sent_json()[1:3]] == ["Hello ", "world"]


def test_audio_delta_passed_through_verbatim():
    async def scenario():
        connector = FakeConnector()
        bridge = make_bridge(connector)
        await bridge.connect()
        ws = connector.sockets[0]
        ws.push({"type": "session.created", "session": {"sample_rate": 24000}})
        ws.push({"type": "response.audio.delta", "delta": "AAEC"})
        ws.push({"type": "response.audio.delta", "delta": ""})
        ws.push({"type": "error", "error": {"message": "bad voice"}})
        await settle()
        state = bridge.state
        await bridge.close()
        return state, [e async for e in bridge.events]

    state, events = asyncio.run(scenario())
    _, chunk, err = events
    assert isinstance(chunk, TTSAudioChunk)
    assert chunk.audio_b64 == "AAEC"
    assert (chunk.sample_rate, chunk.audio_format) == (24000, "pcm")
    assert isinstance(err, BridgeError)
    assert err.reason == "bad voice"
    assert not err.fatal
    assert state is BridgeState.READY


def test_close_drops_queued_commands():
    async def scenario():
        connector = FakeConnector()
        bridge = make_bridge(connector)
        await bridge.connect()
        ws = connector.sockets[0]
        await settle()
        bridge.append_text("never sent")
        bridge.commit()
        await bridge.close()
        # Ack arriving after close must not flush anything
        ws.push({"type": "session.created", "session": {}})
        await settle()
        bridge.append_text("late")
        await settle()
        return ws, bridge.state

    ws, state = asyncio.run(scenario())
    assert ws.sent_types() == ["session.update"]
    assert ws.closed
    assert state is BridgeState.CLOSED
