"""
ASR wire protocol strategies.

Two upstream protocols sit behind the same bridge:

EVENT_STREAM ("realtime"):
    session.update on open -> ready immediately.
    Audio as base64 input_audio_buffer.append events.
    Transcripts classified by event `type`.

DUPLEX_TASK ("inference"):
    run-task on open -> ready only after task-started.
    Audio as raw binary frames.
    Results in result-generated events, each transcription/translation
    flagged final via sentence_end.
    finish-task must reference the confirmed task id.

A strategy is picked once per bridge and never renegotiated. Strategies
hold only per-connection protocol state (event ids, task id); they never
touch the socket.
"""

from __future__ import annotations

import base64
import json
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from uuid import uuid4

from constants import (
    ASR_INPUT_FORMAT,
    AUDIO_SAMPLE_RATE_HZ_DEFAULT,
    DUPLEX_MODEL_PREFIXES,
    DUPLEX_URL_MARKER,
    REALTIME_BETA_HEADER,
    TRANSLATION_MAX_TARGET_LANGUAGES,
    TRANSLATION_MODEL_PREFIX,
)


class AsrProtocol(str, Enum):
    """Upstream ASR wire protocol."""

    EVENT_STREAM = "realtime"
    DUPLEX_TASK = "inference"


class ModelFamily(str, Enum):
    """
    Duplex-task model families.

    TRANSLATION models accept source/target languages and can translate.
    TRANSCRIPTION models take a single language hint and never translate.
    """

    TRANSLATION = "translation"
    TRANSCRIPTION = "transcription"


def select_protocol(
    *,
    model: str | None,
    url: str | None,
    explicit: AsrProtocol | None = None,
) -> AsrProtocol:
    """
    Decide the wire protocol once, at bridge construction.

    Explicit choice wins, then the endpoint path, then the model name.
    """
    if explicit is not None:
        return explicit
    if url and DUPLEX_URL_MARKER in url:
        return AsrProtocol.DUPLEX_TASK
    if model and model.startswith(DUPLEX_MODEL_PREFIXES):
        return AsrProtocol.DUPLEX_TASK
    return AsrProtocol.EVENT_STREAM


def model_family(model: str | None) -> ModelFamily:
    """Classify a duplex-task model name."""
    if model and model.startswith(TRANSLATION_MODEL_PREFIX):
        return ModelFamily.TRANSLATION
    return ModelFamily.TRANSCRIPTION


@dataclass(frozen=True)
class AsrSettings:
    """
    Everything a bridge needs to talk to one upstream ASR session.
    """

    model: str
    sample_rate: int = AUDIO_SAMPLE_RATE_HZ_DEFAULT
    audio_format: str = ASR_INPUT_FORMAT
    language: str | None = "zh"
    source_language: str | None = None

    # Server-side voice activity detection
    vad_enabled: bool = True
    vad_silence_ms: int | None = 400
    vad_threshold: float = 0.0

    transcription_enabled: bool = True
    translation_enabled: bool = False
    translation_target_languages: tuple[str, ...] = ()

    # Transcription-family tuning knobs (None = leave upstream default)
    semantic_punctuation_enabled: bool | None = None
    max_sentence_silence_ms: int | None = None
    multi_threshold_mode_enabled: bool | None = None

    # Verbatim session.update override (event-stream only)
    session_update_template: dict[str, Any] | None = field(default=None, hash=False)


def derive_task_parameters(settings: AsrSettings) -> dict[str, Any]:
    """
    Build run-task `parameters` for the duplex-task protocol.

    Translation family:
        target languages truncated to one; translation enabled only if
        requested AND a target language remains.
    Transcription family:
        single language hint + punctuation/silence knobs; any translation
        request is ignored.
    """
    parameters: dict[str, Any] = {
        "format": settings.audio_format,
        "sample_rate": settings.sample_rate,
    }

    if model_family(settings.model) is ModelFamily.TRANSLATION:
        targets = list(settings.translation_target_languages[:TRANSLATION_MAX_TARGET_LANGUAGES])
        if settings.source_language:
            parameters["source_language"] = settings.source_language
        parameters["transcription_enabled"] = settings.transcription_enabled
        parameters["translation_enabled"] = settings.translation_enabled and len(targets) > 0
        if targets:
            parameters["translation_target_languages"] = targets
        if settings.vad_silence_ms is not None:
            parameters["max_end_silence"] = settings.vad_silence_ms
        return parameters

    if settings.language:
        parameters["language_hints"] = [settings.language]
        if settings.semantic_punctuation_enabled is not None:
            parameters["semantic_punctuation_enabled"] = settings.semantic_punctuation_enabled
        if settings.max_sentence_silence_ms is not None:
            parameters["max_sentence_silence"] = settings.max_sentence_silence_ms
        if settings.multi_threshold_mode_enabled is not None:
            parameters["multi_threshold_mode_enabled"] = settings.multi_threshold_mode_enabled
    return parameters


# =============================================================================
# Normalized protocol output
# =============================================================================

class UpdateKind(str, Enum):
    """What one upstream message meant, protocol-independently."""

    PARTIAL = "partial"
    FINAL = "final"
    TRANSLATION_PARTIAL = "translation_partial"
    TRANSLATION_FINAL = "translation_final"
    FAILED = "failed"


@dataclass(frozen=True)
class AsrUpdate:
    kind: UpdateKind
    text: str
    lang: str | None = None


@dataclass(frozen=True)
class Classified:
    """
    Result of classifying one upstream message.

    ready:
        The message completes the handshake.
    """
    updates: tuple[AsrUpdate, ...] = ()
    ready: bool = False


def _new_event_id() -> str:
    return f"event_{uuid4().hex}"


def _new_task_id() -> str:
    return uuid4().hex


# =============================================================================
# Strategy interface
# =============================================================================

class WireProtocol(ABC):
    """
    Per-connection protocol strategy.
    """

    protocol: AsrProtocol
    ready_on_open: bool = False

    def __init__(self, settings: AsrSettings) -> None:
        self._settings = settings

    def build_url(self, base_url: str) -> str:
        """URL to dial."""
        return base_url

    def extra_headers(self) -> dict[str, str]:
        """Headers in addition to Authorization."""
        return {}

    @abstractmethod
    def opening_messages(self) -> list[str]:
        """JSON texts to send as soon as the transport opens."""
        raise NotImplementedError

    @abstractmethod
    def encode_audio(self, pcm_bytes: bytes) -> str | bytes:
        """Wire form of one audio chunk."""
        raise NotImplementedError

    @abstractmethod
    def finish_messages(self) -> list[str]:
        """JSON texts that end the upstream session gracefully."""
        raise NotImplementedError

    @abstractmethod
    def classify(self, message: dict[str, Any]) -> Classified:
        """Map one upstream JSON message onto normalized updates."""
        raise NotImplementedError


# =============================================================================
# Event-stream ("realtime") protocol
# =============================================================================

_EVENT_STREAM_PARTIAL = "conversation.item.input_audio_transcription.text"
_EVENT_STREAM_COMPLETED = "conversation.item.input_audio_transcription.completed"
_EVENT_STREAM_SESSION_FINISHED = "session.finished"


class EventStreamProtocol(WireProtocol):
    """
    Session-update / append-event protocol with no task handshake.
    """

    protocol = AsrProtocol.EVENT_STREAM
    ready_on_open = True

    def build_url(self, base_url: str) -> str:
        if not self._settings.model:
            return base_url
        parts = urllib.parse.urlsplit(base_url)
        query = dict(urllib.parse.parse_qsl(parts.query))
        query["model"] = self._settings.model
        return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))

    def extra_headers(self) -> dict[str, str]:
        name, value = REALTIME_BETA_HEADER
        return {name: value}

    def session_update(self) -> dict[str, Any]:
        """The single configuration event sent on open."""
        s = self._settings
        if s.session_update_template:
            return s.session_update_template

        turn_detection: dict[str, Any] | None = None
        if s.vad_enabled:
            turn_detection = {
                "type": "server_vad",
                "threshold": s.vad_threshold,
                "silence_duration_ms": s.vad_silence_ms,
            }

        return {
            "event_id": _new_event_id(),
            "type": "session.update",
            "session": {
                "modalities": ["text"],
                "input_audio_format": s.audio_format,
                "sample_rate": s.sample_rate,
                "input_audio_transcription": {"language": s.language},
                "turn_detection": turn_detection,
            },
        }

    def opening_messages(self) -> list[str]:
        return [_dumps(self.session_update())]

    def encode_audio(self, pcm_bytes: bytes) -> str:
        return _dumps({
            "event_id": _new_event_id(),
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(pcm_bytes).decode("ascii"),
        })

    def finish_messages(self) -> list[str]:
        out: list[str] = []
        if not self._settings.vad_enabled:
            out.append(_dumps({"event_id": _new_event_id(), "type": "input_audio_buffer.commit"}))
        out.append(_dumps({"event_id": _new_event_id(), "type": "session.finish"}))
        return out

    def classify(self, message: dict[str, Any]) -> Classified:
        msg_type = message.get("type")

        if msg_type == _EVENT_STREAM_PARTIAL:
            text = message.get("text") or message.get("stash") or ""
            return Classified(updates=(AsrUpdate(UpdateKind.PARTIAL, _as_text(text)),))

        if msg_type == _EVENT_STREAM_COMPLETED:
            text = message.get("transcript") or message.get("text") or ""
            return Classified(updates=(AsrUpdate(UpdateKind.FINAL, _as_text(text)),))

        if msg_type == _EVENT_STREAM_SESSION_FINISHED:
            text = message.get("transcript") or ""
            return Classified(updates=(AsrUpdate(UpdateKind.FINAL, _as_text(text)),))

        return Classified()


# =============================================================================
# Duplex-task ("inference") protocol
# =============================================================================

class DuplexTaskProtocol(WireProtocol):
    """
    run-task / task-started / finish-task protocol.
    """

    protocol = AsrProtocol.DUPLEX_TASK
    ready_on_open = False

    def __init__(self, settings: AsrSettings) -> None:
        super().__init__(settings)
        self._task_id: str | None = None
        self._confirmed_task_id: str | None = None
        self._parameters = derive_task_parameters(settings)

    @property
    def parameters(self) -> dict[str, Any]:
        """Effective run-task parameters."""
        return dict(self._parameters)

    @property
    def task_id(self) -> str | None:
        """Task id sent in run-task (None before open)."""
        return self._task_id

    @property
    def confirmed_task_id(self) -> str | None:
        """Task id acknowledged by task-started."""
        return self._confirmed_task_id

    @property
    def translation_active(self) -> bool:
        """True if the upstream was asked to translate."""
        return bool(self._parameters.get("translation_enabled"))

    def run_task(self) -> dict[str, Any]:
        """Build the run-task command with a fresh task id."""
        self._task_id = _new_task_id()
        return {
            "header": {
                "action": "run-task",
                "task_id": self._task_id,
                "streaming": "duplex",
            },
            "payload": {
                "task_group": "audio",
                "task": "asr",
                "function": "recognition",
                "model": self._settings.model,
                "parameters": self.parameters,
                "input": {},
            },
        }

    def opening_messages(self) -> list[str]:
        return [_dumps(self.run_task())]

    def encode_audio(self, pcm_bytes: bytes) -> bytes:
        return pcm_bytes

    def finish_messages(self) -> list[str]:
        if self._confirmed_task_id is None:
            return []
        return [_dumps({
            "header": {
                "action": "finish-task",
                "task_id": self._confirmed_task_id,
                "streaming": "duplex",
            },
            "payload": {"input": {}},
        })]

    def classify(self, message: dict[str, Any]) -> Classified:
        header = message.get("header")
        if not isinstance(header, dict):
            return Classified()
        event = header.get("event")

        if event == "task-started":
            self._confirmed_task_id = header.get("task_id") or self._task_id
            return Classified(ready=True)

        if event == "result-generated":
            return Classified(updates=self._results(message))

        if event == "task-failed":
            reason = header.get("error_message") or "task failed"
            return Classified(updates=(AsrUpdate(UpdateKind.FAILED, str(reason)),))

        return Classified()

    def _results(self, message: dict[str, Any]) -> tuple[AsrUpdate, ...]:
        payload = message.get("payload")
        output = payload.get("output") if isinstance(payload, dict) else None
        if not isinstance(output, dict):
            return ()

        updates: list[AsrUpdate] = []

        transcription = output.get("transcription") or output.get("sentence")
        if isinstance(transcription, dict) and transcription.get("text"):
            kind = UpdateKind.FINAL if transcription.get("sentence_end") is True else UpdateKind.PARTIAL
            updates.append(AsrUpdate(kind, _as_text(transcription["text"])))

        translations = output.get("translations")
        if self.translation_active and isinstance(translations, list):
            for translation in translations:
                if not isinstance(translation, dict) or not translation.get("text"):
                    continue
                kind = (
                    UpdateKind.TRANSLATION_FINAL
                    if translation.get("sentence_end") is True
                    else UpdateKind.TRANSLATION_PARTIAL
                )
                lang = translation.get("lang")
                updates.append(AsrUpdate(kind, _as_text(translation["text"]), lang))

        return tuple(updates)


def build_wire_protocol(protocol: AsrProtocol, settings: AsrSettings) -> WireProtocol:
    """Instantiate the strategy for `protocol`."""
    if protocol is AsrProtocol.DUPLEX_TASK:
        return DuplexTaskProtocol(settings)
    return EventStreamProtocol(settings)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else str(value)


def _dumps(event: dict[str, Any]) -> str:
    return json.dumps(event, ensure_ascii=False)
