"""
Realtime session coordinator.

Responsibilities:
- Owns the session_id -> VoiceSession registry (event-loop confined)
- start / resume / stop lifecycle, plus teardown of a closing connection
- Routes frames through each session's reassembly buffer
- Builds and connects the ASR / TTS bridges, in the background
- Pumps bridge events to the owning connection, tagged with session_id
- Finish-then-close bridges after a grace delay on stop

Still NOT responsible for:
- Client message parsing (protocol.messages)
- Token checks (auth)
- Wire protocols (adapters)

Lifecycle per session id:

    absent --start--> ACTIVE --stop / teardown--> (removed, STOPPED)
                        |  ^
                        +--+ start again = resume (rebinds owner/outbound)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

from adapters.asr.dashscope import DashScopeASRBridge
from adapters.asr.protocols import (
    AsrProtocol,
    AsrSettings,
    ModelFamily,
    model_family,
    select_protocol,
)
from adapters.base import BridgeConnectError, ConnectFn, StreamingBridge
from adapters.state import TERMINAL_STATES
from adapters.tts.qwen_realtime import QwenTTSBridge, TtsSettings
from audio.capture import CaptureError, WavCaptureSink
from audio.frames import FrameFormat
from audio.pcm import pcm16_levels
from audio.reorder import PushOutcome, PushResult
from config import AppConfig
from constants import ERR_ASR_CONNECT_FAILED, FRAME_TRACE_EVERY
from observability.logger import debug_enabled, log_debug_event, log_event
from protocol.messages import encode_bridge_event, server_error
from session.errors import (
    FrameRejected,
    SessionCaptureFailed,
    TtsNotStarted,
    UnknownSession,
)
from session.voice_session import AsrOptions, OutboundSink, SessionState, VoiceSession

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class StartResult:
    session: VoiceSession
    resumed: bool


class SessionCoordinator:
    """
    One coordinator per process; shared by every client connection.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        connect_fn: ConnectFn | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._config = config
        self._connect_fn = connect_fn
        self._sleep = sleep

        self._sessions: dict[str, VoiceSession] = {}
        self._activations = 0

        # Grace-delayed bridge closes still in flight
        self._closing: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get(self, session_id: str) -> VoiceSession | None:
        return self._sessions.get(session_id)

    def session_ids(self) -> tuple[str, ...]:
        return tuple(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # start / resume
    # ------------------------------------------------------------------

    async def start(
        self,
        session_id: str,
        *,
        owner: str,
        outbound: OutboundSink,
        frame_format: FrameFormat | None = None,
        asr_options: AsrOptions | None = None,
    ) -> StartResult:
        """
        Create a session, or resume it if already active.

        A resume rebinds owner/outbound to the caller and allocates nothing.

        Raises:
            SessionCaptureFailed if the capture file cannot be created.
        """
        self._activations += 1

        existing = self._sessions.get(session_id)
        if existing is not None and existing.active:
            previous_owner = existing.owner
            existing.owner = owner
            existing.outbound = outbound
            existing.activation = self._activations
            log_event({
                "event_type": "SESSION_RESUMED",
                "previous_owner": previous_owner,
                **existing.log_context(),
            })
            return StartResult(session=existing, resumed=True)

        fmt = frame_format or FrameFormat()

        # In-memory state first: a failure here must not leave a capture file
        session = VoiceSession(
            session_id=session_id,
            owner=owner,
            outbound=outbound,
            frame_format=fmt,
            reorder_window=self._config.reorder_window,
            activation=self._activations,
        )
        asr = self._build_asr_bridge(session_id, fmt, asr_options or AsrOptions())

        path = Path(self._config.recordings_dir) / f"{session_id}.wav"
        try:
            session.sink = WavCaptureSink.open(path, fmt.sample_rate_hz)
        except CaptureError as e:
            log_event({
                "event_type": "CAPTURE_OPEN_FAILED",
                "session_id": session_id,
                "path": str(path),
                "error": str(e),
            })
            raise SessionCaptureFailed(str(e), session_id=session_id) from e

        session.asr = asr
        self._sessions[session_id] = session

        log_event({
            "event_type": "SESSION_STARTED",
            "capture_path": str(path),
            "frame_bytes": fmt.frame_bytes,
            "model": asr.settings.model,
            "protocol": asr.protocol.value,
            **session.log_context(),
        })

        self._spawn_bridge(session, asr)
        return StartResult(session=session, resumed=False)

    def _build_asr_bridge(
        self,
        session_id: str,
        fmt: FrameFormat,
        options: AsrOptions,
    ) -> DashScopeASRBridge:
        cfg = self._config

        model = cfg.asr_default_model
        if options.model:
            if options.model in cfg.asr_allow_models:
                model = options.model
            else:
                log_event({
                    "event_type": "ASR_MODEL_NOT_ALLOWED",
                    "session_id": session_id,
                    "requested": options.model,
                    "using": model,
                })

        protocol = select_protocol(model=model, url=None)
        base_url = (
            cfg.asr_url_inference if protocol is AsrProtocol.DUPLEX_TASK else cfg.asr_url_realtime
        )

        if model_family(model) is ModelFamily.TRANSLATION:
            translation_enabled = (
                options.translation_enabled
                if options.translation_enabled is not None
                else cfg.translation_enabled
            )
            targets = options.translation_target_languages or cfg.translation_target_languages
        else:
            # Transcription-only family: translation requests are ignored
            translation_enabled = False
            targets = ()

        settings = AsrSettings(
            model=model,
            sample_rate=fmt.sample_rate_hz,
            language=cfg.asr_language,
            source_language=cfg.asr_source_language,
            vad_enabled=cfg.vad_enabled,
            vad_silence_ms=cfg.vad_silence_ms,
            vad_threshold=cfg.vad_threshold,
            translation_enabled=translation_enabled,
            translation_target_languages=tuple(targets),
            semantic_punctuation_enabled=cfg.fun_asr_semantic_punctuation_enabled,
            max_sentence_silence_ms=cfg.fun_asr_max_sentence_silence_ms,
            multi_threshold_mode_enabled=cfg.fun_asr_multi_threshold_mode_enabled,
            session_update_template=cfg.session_update_template,
        )

        return DashScopeASRBridge(
            session_id=session_id,
            settings=settings,
            api_key=cfg.dashscope_api_key,
            base_url=base_url,
            protocol=protocol,
            connect_fn=self._connect_fn,
        )

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    async def push_frame(self, session_id: str, seq: int, payload: bytes) -> PushResult:
        """
        Route one frame through the session's reassembly buffer.

        Raises:
            UnknownSession, FrameRejected, SessionCaptureFailed
        """
        session = self._require(session_id)

        capture_error: CaptureError | None = None
        async with session.lock:
            if not session.active:
                raise UnknownSession(f"unknown session: {session_id}", session_id=session_id)

            session.frames_received += 1
            try:
                result = session.buffer.push(seq, payload)
            except CaptureError as e:
                capture_error = e

            if (
                capture_error is None
                and debug_enabled()
                and session.frames_received % FRAME_TRACE_EVERY == 0
            ):
                levels = pcm16_levels(payload)
                log_debug_event({
                    "event_type": "FRAME_TRACE",
                    "session_id": session_id,
                    "seq": seq,
                    "peak_dbfs": levels.peak_dbfs,
                    "rms_dbfs": levels.rms_dbfs,
                    "frames_received": session.frames_received,
                    "capture_bytes": session.sink.data_bytes if session.sink else None,
                    **session.buffer.snapshot(),
                })

        if capture_error is not None:
            log_event({
                "event_type": "CAPTURE_WRITE_FAILED",
                "session_id": session_id,
                "error": str(capture_error),
            })
            # Lock released above: stop() takes it again
            await self.stop(session_id)
            raise SessionCaptureFailed(str(capture_error), session_id=session_id) from capture_error

        if result.outcome is PushOutcome.REJECTED_BAD_SIZE:
            log_debug_event({
                "event_type": "FRAME_REJECTED",
                "session_id": session_id,
                "seq": seq,
                "expected_bytes": result.expected_bytes,
                "got_bytes": result.got_bytes,
            })
            raise FrameRejected(
                "frame size mismatch",
                session_id=session_id,
                details={"expected": result.expected_bytes, "got": result.got_bytes},
            )

        if result.outcome is PushOutcome.DROPPED_STALE:
            log_debug_event({
                "event_type": "FRAME_STALE",
                "session_id": session_id,
                "seq": seq,
                "expected_seq": result.expected_seq,
            })

        return result

    # ------------------------------------------------------------------
    # stop / teardown
    # ------------------------------------------------------------------

    async def stop(self, session_id: str, *, reason: str = "client_stop") -> bool:
        """
        Stop and remove a session.

        Returns False (and does nothing) if the session is not registered,
        so a second stop is a no-op.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        async with session.lock:
            session.state = SessionState.STOPPED

            capture_bytes = None
            if session.sink is not None:
                capture_bytes = session.sink.data_bytes
                try:
                    session.sink.finalize()
                except CaptureError as e:
                    log_event({
                        "event_type": "CAPTURE_FINALIZE_FAILED",
                        "session_id": session_id,
                        "error": str(e),
                    })

            bridges: list[StreamingBridge] = [
                b for b in (session.asr, session.tts) if isinstance(b, StreamingBridge)
            ]
            for bridge in bridges:
                if bridge.state not in TERMINAL_STATES:
                    bridge.finish()

            if bridges:
                self._track_closing(
                    asyncio.create_task(self._close_after_grace(session_id, bridges))
                )

        log_event({
            "event_type": "SESSION_STOPPED",
            "reason": reason,
            "capture_bytes": capture_bytes,
            **session.buffer.snapshot(),
            **session.log_context(),
        })
        return True

    async def teardown_owner(self, owner: str) -> int:
        """
        Stop every session currently owned by a closing connection.

        Sessions that were resumed by another connection are left alone.
        """
        owned = [s.session_id for s in self._sessions.values() if s.owner == owner]
        stopped = 0
        for session_id in owned:
            if await self.stop(session_id, reason="connection_closed"):
                stopped += 1
        return stopped

    async def shutdown(self) -> None:
        """Stop all sessions and wait for their bridges to close."""
        for session_id in list(self._sessions):
            await self.stop(session_id, reason="shutdown")
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)
        log_event({"event_type": "COORDINATOR_SHUTDOWN"})

    async def _close_after_grace(self, session_id: str, bridges: list[StreamingBridge]) -> None:
        try:
            await self._sleep(self._config.stop_grace_ms / 1000)
        finally:
            for bridge in bridges:
                try:
                    await bridge.close()
                except Exception as e:  # pylint: disable=broad-exception-caught
                    log_event({
                        "event_type": "BRIDGE_CLOSE_FAILED",
                        "session_id": session_id,
                        "service": bridge.service.value,
                        "error": repr(e),
                    })

    # ------------------------------------------------------------------
    # TTS
    # ------------------------------------------------------------------

    def resolve_tts_session(self, owner: str, session_id: str | None) -> VoiceSession:
        """
        Pick the target session of a tts.* message.

        Explicit id: must be active. Omitted: the owner's most recently
        started (or resumed) active session.
        """
        if session_id is not None:
            return self._require(session_id)

        owned = [s for s in self._sessions.values() if s.owner == owner and s.active]
        if not owned:
            raise UnknownSession("no active session for tts")
        return max(owned, key=lambda s: s.activation)

    async def tts_start(
        self,
        session: VoiceSession,
        *,
        voice: str | None = None,
        instructions: str | None = None,
    ) -> bool:
        """
        Create and connect the session's TTS bridge.

        Returns False if a live bridge already exists (no-op).
        """
        async with session.lock:
            current = session.tts
            if isinstance(current, StreamingBridge):
                if current.state not in TERMINAL_STATES:
                    return False
                # Replace a dead bridge; release its transport first
                self._track_closing(asyncio.create_task(current.close()))

            cfg = self._config
            settings = TtsSettings(
                model=cfg.tts_model,
                voice=voice or cfg.tts_voice,
                response_format=cfg.tts_response_format,
                sample_rate=cfg.tts_sample_rate,
                mode=cfg.tts_mode,
                instructions=instructions or cfg.tts_instructions,
                optimize_instructions=cfg.tts_optimize_instructions,
            )
            bridge = QwenTTSBridge(
                session_id=session.session_id,
                settings=settings,
                api_key=cfg.dashscope_api_key,
                base_url=cfg.tts_url,
                connect_fn=self._connect_fn,
            )
            session.tts = bridge

        log_event({
            "event_type": "TTS_STARTED",
            "session_id": session.session_id,
            "voice": settings.voice,
            "sample_rate": settings.sample_rate,
        })
        self._spawn_bridge(session, bridge)
        return True

    def _require_tts(self, session: VoiceSession) -> QwenTTSBridge:
        bridge = session.tts
        if not isinstance(bridge, QwenTTSBridge):
            raise TtsNotStarted("tts not started", session_id=session.session_id)
        return bridge

    async def tts_append(self, session: VoiceSession, text: str) -> None:
        async with session.lock:
            self._require_tts(session).append_text(text)

    async def tts_commit(self, session: VoiceSession) -> None:
        async with session.lock:
            self._require_tts(session).commit()

    async def tts_finish(self, session: VoiceSession) -> None:
        async with session.lock:
            self._require_tts(session).finish()

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn_bridge(self, session: VoiceSession, bridge: StreamingBridge) -> None:
        session.track(asyncio.create_task(self._pump(session, bridge)))
        session.track(asyncio.create_task(self._connect(session, bridge)))

    async def _connect(self, session: VoiceSession, bridge: StreamingBridge) -> None:
        try:
            await bridge.connect()
        except BridgeConnectError as e:
            # The pump ends once the channel closes
            bridge.events.close()
            if not session.active:
                return
            if bridge is session.asr:
                session.send(server_error(ERR_ASR_CONNECT_FAILED, str(e), session_id=session.session_id))
            else:
                session.send({"type": "tts.error", "session_id": session.session_id, "message": str(e)})
        except Exception as e:  # pylint: disable=broad-exception-caught
            bridge.events.close()
            log_event({
                "event_type": "BRIDGE_CONNECT_TASK_FAILED",
                "session_id": session.session_id,
                "service": bridge.service.value,
                "exception": type(e).__name__,
                "message": str(e),
            })

    async def _pump(self, session: VoiceSession, bridge: StreamingBridge) -> None:
        try:
            async for event in bridge.events:
                msg = encode_bridge_event(session.session_id, event)
                if msg is not None:
                    session.send(msg)
        except Exception as e:  # pylint: disable=broad-exception-caught
            log_event({
                "event_type": "BRIDGE_PUMP_FAILED",
                "session_id": session.session_id,
                "service": bridge.service.value,
                "exception": type(e).__name__,
                "message": str(e),
            })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _track_closing(self, task: asyncio.Task[None]) -> None:
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    def _require(self, session_id: str) -> VoiceSession:
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            raise UnknownSession(f"unknown session: {session_id}", session_id=session_id)
        return session

