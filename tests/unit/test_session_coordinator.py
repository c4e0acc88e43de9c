# pylint: disable=missing-module-docstring,missing-function-docstring

import asyncio
import struct
from pathlib import Path
from typing import Any

import pytest

from adapters.state import BridgeState
from audio.capture import CaptureError
from audio.frames import FrameFormat
from config import AppConfig
from fakes import FakeConnector, FakeUpstream, settle
from session.coordinator import SessionCoordinator
from session.errors import FrameRejected, SessionCaptureFailed, TtsNotStarted, UnknownSession
from session.voice_session import AsrOptions

FRAME = 640


def make_config(tmp_path: Path, **overrides: Any) -> AppConfig:
    fields: dict[str, Any] = {
        "recordings_dir": str(tmp_path),
        "dashscope_api_key": "sk-test",
        "asr_url_inference": "wss://up.example/api-ws/v1/inference",
        "asr_url_realtime": "wss://up.example/api-ws/v1/realtime",
        "tts_url": "wss://up.example/api-ws/v1/realtime",
    }
    fields.update(overrides)
    return AppConfig(**fields)


class Harness:
    def __init__(self, tmp_path: Path, **overrides: Any) -> None:
        self.connector = FakeConnector(fail=overrides.pop("connect_error", None))
        self.sleeps: list[float] = []
        self.coordinator = SessionCoordinator(
            config=make_config(tmp_path, **overrides),
            connect_fn=self.connector,
            sleep=self._sleep,
        )
        self.outbox: dict[str, list[dict[str, Any]]] = {}

    async def _sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def sink_for(self, owner: str):
        box = self.outbox.setdefault(owner, [])
        return box.append

    async def start(self, session_id: str = "s1", owner: str = "c1", **kwargs: Any):
        result = await self.coordinator.start(
            session_id, owner=owner, outbound=self.sink_for(owner), **kwargs
        )
        await settle()
        return result

    def upstream(self, index: int = -1) -> FakeUpstream:
        return self.connector.sockets[index]

    async def confirm_task(self, ws: FakeUpstream) -> None:
        task_id = ws.sent_json()[0]["header"]["task_id"]
        ws.push({"header": {"event": "task-started", "task_id": task_id}})
        await settle()


def pcm(seq: int) -> bytes:
    return struct.pack("<h", seq) * (FRAME // 2)


def wav_sizes(path: Path) -> tuple[int, int]:
    raw = path.read_bytes()
    return struct.unpack_from("<I", raw, 4)[0], struct.unpack_from("<I", raw, 40)[0]


# ---------------------------------------------------------------------
# start / resume
# ---------------------------------------------------------------------

def test_start_creates_capture_and_connects_asr(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        result = await h.start("s1")
        return h, result

    h, result = asyncio.run(scenario())
    assert not result.resumed
    assert (tmp_path / "s1.wav").exists()
    url, headers = h.connector.calls[0]
    assert url == "wss://up.example/api-ws/v1/inference"
    assert headers["Authorization"] == "Bearer sk-test"
    assert h.upstream().sent_json()[0]["payload"]["model"] == "fun-asr-realtime"


def test_repeat_start_resumes_without_new_resources(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        first = await h.start("s1", owner="c1")
        second = await h.start("s1", owner="c2")
        return h, first, second

    h, first, second = asyncio.run(scenario())
    assert second.resumed
    assert second.session is first.session
    assert second.session.owner == "c2"
    assert len(h.connector.calls) == 1


def test_disallowed_model_falls_back_to_default(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1", asr_options=AsrOptions(model="secret-model"))
        return h

    h = asyncio.run(scenario())
    assert h.upstream().sent_json()[0]["payload"]["model"] == "fun-asr-realtime"


def test_event_stream_model_uses_realtime_url(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path, asr_allow_models=("qwen3-asr-flash-realtime",))
        await h.start("s1", asr_options=AsrOptions(model="qwen3-asr-flash-realtime"))
        return h

    h = asyncio.run(scenario())
    url, headers = h.connector.calls[0]
    assert url == "wss://up.example/api-ws/v1/realtime?model=qwen3-asr-flash-realtime"
    assert headers["OpenAI-Beta"] == "realtime=v1"
    assert h.upstream().sent_types() == ["session.update"]


def test_translation_request_honored_for_translation_model(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path, translation_enabled=False, translation_target_languages=("en",))
        await h.start("s1", asr_options=AsrOptions(
            model="gummy-realtime-v1",
            translation_enabled=True,
            translation_target_languages=("ja", "en"),
        ))
        return h

    params = asyncio.run(scenario()).upstream().sent_json()[0]["payload"]["parameters"]
    assert params["translation_enabled"] is True
    assert params["translation_target_languages"] == ["ja"]


def test_translation_request_ignored_for_transcription_model(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1", asr_options=AsrOptions(
            model="fun-asr-realtime",
            translation_enabled=True,
            translation_target_languages=("en",),
        ))
        ws = h.upstream()
        await h.confirm_task(ws)
        ws.push({"header": {"event": "result-generated"}, "payload": {"output": {
            "translations": [{"text": "hello", "lang": "en", "sentence_end": True}],
        }}})
        await settle()
        return h

    h = asyncio.run(scenario())
    assert h.outbox["c1"] == []


def test_capture_open_failure_creates_no_session(tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")

    async def scenario():
        h = Harness(tmp_path, recordings_dir=str(blocker / "sub"))
        with pytest.raises(SessionCaptureFailed) as exc:
            await h.start("s1")
        return h, exc.value

    h, err = asyncio.run(scenario())
    assert err.code == "CAPTURE_FAILED"
    assert h.coordinator.get("s1") is None
    assert h.connector.calls == []


def test_unusable_window_leaves_no_capture_file(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path, reorder_window=0)
        with pytest.raises(ValueError):
            await h.start("s1")
        return h

    h = asyncio.run(scenario())
    assert not (tmp_path / "s1.wav").exists()
    assert h.coordinator.get("s1") is None
    assert h.connector.calls == []


def test_asr_connect_failure_reported_to_owner(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path, connect_error=OSError("refused"))
        await h.start("s1")
        return h

    h = asyncio.run(scenario())
    (msg,) = h.outbox["c1"]
    assert msg["type"] == "server.error"
    assert msg["code"] == "ASR_CONNECT_FAILED"
    assert msg["session_id"] == "s1"
    # Session survives the upstream failure
    assert h.coordinator.get("s1") is not None


# ---------------------------------------------------------------------
# Frames
# ---------------------------------------------------------------------

def test_frames_reach_capture_and_asr_in_sequence_order(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1")
        ws = h.upstream()

        for seq in (0, 2, 1, 3):
            await h.coordinator.push_frame("s1", seq, pcm(seq))
        await settle()
        held_before_ready = list(ws.sent[1:])

        await h.confirm_task(ws)
        await h.coordinator.stop("s1")
        await settle()
        return h, ws, held_before_ready

    h, ws, held_before_ready = asyncio.run(scenario())
    ordered = b"".join(pcm(s) for s in range(4))

    assert held_before_ready == []
    assert b"".join(m for m in ws.sent if isinstance(m, bytes)) == ordered

    raw = (tmp_path / "s1.wav").read_bytes()
    assert raw[44:] == ordered
    assert wav_sizes(tmp_path / "s1.wav") == (36 + len(ordered), len(ordered))


def test_wrong_size_frame_rejected_with_details(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        result = await h.start("s1", frame_format=FrameFormat(sample_rate_hz=8000, frame_ms=20))
        with pytest.raises(FrameRejected) as exc:
            await h.coordinator.push_frame("s1", 0, b"\x00" * 640)
        return result.session, exc.value

    session, err = asyncio.run(scenario())
    assert err.code == "BAD_FRAME"
    assert err.details == {"expected": 320, "got": 640}
    assert session.buffer.expected_seq == 0
    assert len(session.buffer) == 0


def test_frame_for_unknown_session(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        with pytest.raises(UnknownSession) as exc:
            await h.coordinator.push_frame("ghost", 0, pcm(0))
        return exc.value

    assert asyncio.run(scenario()).code == "BAD_SESSION"


def test_capture_write_failure_stops_session(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        result = await h.start("s1")

        def broken(_chunk: bytes) -> None:
            raise CaptureError("disk full")

        result.session.sink.append = broken
        with pytest.raises(SessionCaptureFailed):
            await h.coordinator.push_frame("s1", 0, pcm(0))
        await settle()
        return h, result.session

    h, session = asyncio.run(scenario())
    assert h.coordinator.get("s1") is None
    assert not session.active
    assert session.sink.finalized
    assert session.asr.state is BridgeState.CLOSED


# ---------------------------------------------------------------------
# Event routing
# ---------------------------------------------------------------------

def test_bridge_events_tagged_and_routed_to_current_owner(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1", owner="c1")
        await h.start("s2", owner="c1")
        ws1, ws2 = h.connector.sockets
        await h.confirm_task(ws1)
        await h.confirm_task(ws2)

        ws1.push({"header": {"event": "result-generated"}, "payload": {"output": {
            "transcription": {"text": "one", "sentence_end": True},
        }}})
        ws2.push({"header": {"event": "result-generated"}, "payload": {"output": {
            "transcription": {"text": "two", "sentence_end": False},
        }}})
        await settle()

        # Resume s1 from another connection: later events follow it
        await h.start("s1", owner="c2")
        ws1.push({"header": {"event": "result-generated"}, "payload": {"output": {
            "transcription": {"text": "three", "sentence_end": True},
        }}})
        await settle()
        return h

    h = asyncio.run(scenario())
    assert h.outbox["c1"] == [
        {"type": "asr.final", "session_id": "s1", "text": "one"},
        {"type": "asr.partial", "session_id": "s2", "text": "two"},
    ]
    assert h.outbox["c2"] == [{"type": "asr.final", "session_id": "s1", "text": "three"}]


def test_task_failed_reported_as_asr_error_without_teardown(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1")
        h.upstream().push({"header": {"event": "task-failed", "error_message": "quota"}})
        await settle()
        return h

    h = asyncio.run(scenario())
    assert h.outbox["c1"] == [
        {"type": "server.error", "code": "ASR_ERROR", "message": "quota", "session_id": "s1"},
    ]
    assert h.coordinator.get("s1") is not None


# ---------------------------------------------------------------------
# stop / teardown
# ---------------------------------------------------------------------

def test_stop_finishes_then_closes_after_grace(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path, stop_grace_ms=500)
        result = await h.start("s1")
        ws = h.upstream()
        await h.confirm_task(ws)

        assert await h.coordinator.stop("s1") is True
        await settle()
        return h, ws, result.session

    h, ws, session = asyncio.run(scenario())
    assert ws.sent_types() == ["run-task", "finish-task"]
    assert h.sleeps == [0.5]
    assert ws.closed
    assert session.asr.state is BridgeState.CLOSED


def test_double_stop_is_noop(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1")
        first = await h.coordinator.stop("s1")
        second = await h.coordinator.stop("s1")
        await settle()
        return h, first, second

    h, first, second = asyncio.run(scenario())
    assert (first, second) == (True, False)
    assert len(h.sleeps) == 1
    assert wav_sizes(tmp_path / "s1.wav") == (36, 0)


def test_start_after_stop_creates_fresh_session(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        first = await h.start("s1")
        await h.coordinator.stop("s1")
        second = await h.start("s1")
        return first, second

    first, second = asyncio.run(scenario())
    assert not second.resumed
    assert second.session is not first.session


def test_teardown_owner_spares_sessions_resumed_elsewhere(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1", owner="c1")
        await h.start("s2", owner="c1")
        await h.start("s2", owner="c2")
        stopped = await h.coordinator.teardown_owner("c1")
        return h, stopped

    h, stopped = asyncio.run(scenario())
    assert stopped == 1
    assert h.coordinator.session_ids() == ("s2",)


def test_shutdown_stops_everything_and_waits_for_closes(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1")
        await h.start("s2", owner="c2")
        await h.coordinator.shutdown()
        return h

    h = asyncio.run(scenario())
    assert len(h.coordinator) == 0
    assert all(ws.closed for ws in h.connector.sockets)


# ---------------------------------------------------------------------
# TTS
# ---------------------------------------------------------------------

def test_tts_commands_require_tts_start(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        result = await h.start("s1")
        with pytest.raises(TtsNotStarted):
            await h.coordinator.tts_append(result.session, "hi")

    asyncio.run(scenario())


def test_tts_session_resolves_to_latest_started(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        await h.start("s1", owner="c1")
        await h.start("s2", owner="c1")
        latest = h.coordinator.resolve_tts_session("c1", None)
        await h.start("s1", owner="c1")
        resumed = h.coordinator.resolve_tts_session("c1", None)
        with pytest.raises(UnknownSession):
            h.coordinator.resolve_tts_session("c9", None)
        return latest.session_id, resumed.session_id

    assert asyncio.run(scenario()) == ("s2", "s1")


def test_tts_flow_routes_audio_to_owner(tmp_path: Path):
    async def scenario():
        h = Harness(tmp_path)
        result = await h.start("s1")
        session = result.session

        assert await h.coordinator.tts_start(session, voice="Ethan") is True
        assert await h.coordinator.tts_start(session) is False
        await settle()
        ws = h.upstream()

        await h.coordinator.tts_append(session, "hello")
        await h.coordinator.tts_commit(session)
        ws.push({"type": "session.created", "session": {"sample_rate": 24000}})
        ws.push({"type": "response.audio.delta", "delta": "AAAA"})
        await settle()
        await h.coordinator.tts_finish(session)
        await settle()
        return h, ws

    h, ws = asyncio.run(scenario())
    url, _ = h.connector.calls[-1]
    assert url == "wss://up.example/api-ws/v1/realtime?model=qwen-tts-realtime"
    assert ws.sent_json()[0]["session"]["voice"] == "Ethan"
    assert ws.sent_types() == [
        "session.update",
        "input_text_buffer.append",
        "input_text_buffer.commit",
        "session.finish",
    ]
    assert h.outbox["c1"] == [
        {"type": "tts.session", "session_id": "s1", "sample_rate": 24000},
        {"type": "tts.audio.delta", "session_id": "s1", "sample_rate": 24000, "format": "pcm", "audio_b64": "AAAA"},
    ]
