# pylint: disable=missing-module-docstring,missing-function-docstring

import base64
import json

import pytest

from adapters.asr.protocols import (
    AsrProtocol,
    AsrSettings,
    DuplexTaskProtocol,
    EventStreamProtocol,
    ModelFamily,
    UpdateKind,
    derive_task_parameters,
    model_family,
    select_protocol,
)


# ---------------------------------------------------------------------
# Protocol selection
# ---------------------------------------------------------------------

@pytest.mark.parametrize(
    ("model", "url", "explicit", "expected"),
    [
        ("qwen3-asr-flash-realtime", None, None, AsrProtocol.EVENT_STREAM),
        ("fun-asr-realtime", None, None, AsrProtocol.DUPLEX_TASK),
        ("gummy-realtime-v1", None, None, AsrProtocol.DUPLEX_TASK),
        ("qwen3-asr", "wss://host/api-ws/v1/inference", None, AsrProtocol.DUPLEX_TASK),
        ("fun-asr-realtime", None, AsrProtocol.EVENT_STREAM, AsrProtocol.EVENT_STREAM),
    ],
)
def test_select_protocol(model, url, explicit, expected):
    assert select_protocol(model=model, url=url, explicit=explicit) is expected


def test_model_family():
    assert model_family("gummy-realtime-v1") is ModelFamily.TRANSLATION
    assert model_family("fun-asr-realtime") is ModelFamily.TRANSCRIPTION


# ---------------------------------------------------------------------
# Parameter derivation
# ---------------------------------------------------------------------

def test_translation_family_truncates_targets_to_one():
    params = derive_task_parameters(AsrSettings(
        model="gummy-realtime-v1",
        source_language="zh",
        translation_enabled=True,
        translation_target_languages=("en", "ja"),
        vad_silence_ms=700,
    ))

    assert params == {
        "format": "pcm",
        "sample_rate": 16000,
        "source_language": "zh",
        "transcription_enabled": True,
        "translation_enabled": True,
        "translation_target_languages": ["en"],
        "max_end_silence": 700,
    }


def test_translation_disabled_without_targets():
    params = derive_task_parameters(AsrSettings(
        model="gummy-realtime-v1",
        translation_enabled=True,
        translation_target_languages=(),
    ))

    assert params["translation_enabled"] is False
    assert "translation_target_languages" not in params


def test_transcription_family_ignores_translation_request():
    params = derive_task_parameters(AsrSettings(
        model="fun-asr-realtime",
        language="en",
        translation_enabled=True,
        translation_target_languages=("ja",),
        semantic_punctuation_enabled=False,
        max_sentence_silence_ms=800,
        multi_threshold_mode_enabled=True,
    ))

    assert params == {
        "format": "pcm",
        "sample_rate": 16000,
        "language_hints": ["en"],
        "semantic_punctuation_enabled": False,
        "max_sentence_silence": 800,
        "multi_threshold_mode_enabled": True,
    }


# ---------------------------------------------------------------------
# Event-stream protocol
# ---------------------------------------------------------------------

def test_event_stream_url_headers_and_session_update():
    proto = EventStreamProtocol(AsrSettings(model="qwen3-asr-flash-realtime", language="zh"))

    assert proto.build_url("wss://host/api-ws/v1/realtime") == (
        "wss://host/api-ws/v1/realtime?model=qwen3-asr-flash-realtime"
    )
    assert proto.extra_headers() == {"OpenAI-Beta": "realtime=v1"}

    (opening,) = proto.opening_messages()
    update = json.loads(opening)
    assert update["type"] == "session.update"
    assert update["event_id"].startswith("event_")
    assert update["session"]["modalities"] == ["text"]
    assert update["session"]["input_audio_transcription"] == {"language": "zh"}
    assert update["session"]["turn_detection"]["type"] == "server_vad"


def test_event_stream_turn_detection_null_when_vad_off():
    proto = EventStreamProtocol(AsrSettings(model="m", vad_enabled=False))
    update = json.loads(proto.opening_messages()[0])
    assert update["session"]["turn_detection"] is None


def test_event_stream_uses_verbatim_template():
    template = {"type": "session.update", "session": {"custom": 1}}
    proto = EventStreamProtocol(AsrSettings(model="m", session_update_template=template))
    assert json.loads(proto.opening_messages()[0]) == template


def test_event_stream_audio_is_base64_append():
    proto = EventStreamProtocol(AsrSettings(model="m"))
    msg = json.loads(proto.encode_audio(b"\x01\x02"))
    assert msg["type"] == "input_audio_buffer.append"
    assert base64.b64decode(msg["audio"]) == b"\x01\x02"


def test_event_stream_finish_commits_only_when_vad_off():
    with_vad = EventStreamProtocol(AsrSettings(model="m", vad_enabled=True))
    without_vad = EventStreamProtocol(AsrSettings(model="m", vad_enabled=False))

    assert [json.loads(m)["type"] for m in with_vad.finish_messages()] == ["session.finish"]
    assert [json.loads(m)["type"] for m in without_vad.finish_messages()] == [
        "input_audio_buffer.commit",
        "session.finish",
    ]


def test_event_stream_classification():
    proto = EventStreamProtocol(AsrSettings(model="m"))
    base = "conversation.item.input_audio_transcription"

    (u,) = proto.classify({"type": f"{base}.text", "stash": "hel"}).updates
    assert (u.kind, u.text) == (UpdateKind.PARTIAL, "hel")

    (u,) = proto.classify({"type": f"{base}.completed", "transcript": "hello"}).updates
    assert (u.kind, u.text) == (UpdateKind.FINAL, "hello")

    (u,) = proto.classify({"type": "session.finished", "transcript": "bye"}).updates
    assert (u.kind, u.text) == (UpdateKind.FINAL, "bye")

    assert proto.classify({"type": "error", "error": {"message": "x"}}).updates == ()
    assert proto.classify({"type": "session.created"}).updates == ()


# ---------------------------------------------------------------------
# Duplex-task protocol
# ---------------------------------------------------------------------

def test_run_task_shape():
    proto = DuplexTaskProtocol(AsrSettings(model="fun-asr-realtime"))
    run = json.loads(proto.opening_messages()[0])

    assert run["header"]["action"] == "run-task"
    assert run["header"]["streaming"] == "duplex"
    assert len(run["header"]["task_id"]) == 32
    assert run["header"]["task_id"] == proto.task_id
    assert run["payload"]["task_group"] == "audio"
    assert run["payload"]["task"] == "asr"
    assert run["payload"]["function"] == "recognition"
    assert run["payload"]["model"] == "fun-asr-realtime"
    assert run["payload"]["input"] == {}


def test_duplex_audio_is_raw_bytes():
    proto = DuplexTaskProtocol(AsrSettings(model="fun-asr-realtime"))
    assert proto.encode_audio(b"\x00\x01") == b"\x00\x01"


def test_finish_without_confirmed_task_is_empty():
    proto = DuplexTaskProtocol(AsrSettings(model="fun-asr-realtime"))
    proto.opening_messages()
    assert proto.finish_messages() == []


def test_task_started_confirms_task_id_and_finish_references_it():
    proto = DuplexTaskProtocol(AsrSettings(model="fun-asr-realtime"))
    proto.opening_messages()

    assert proto.confirmed_task_id is None
    classified = proto.classify({"header": {"event": "task-started", "task_id": proto.task_id}})
    assert classified.ready
    assert proto.confirmed_task_id == proto.task_id

    (finish,) = proto.finish_messages()
    assert json.loads(finish) == {
        "header": {"action": "finish-task", "task_id": proto.task_id, "streaming": "duplex"},
        "payload": {"input": {}},
    }


def test_result_generated_transcription_and_translation():
    proto = DuplexTaskProtocol(AsrSettings(
        model="gummy-realtime-v1",
        translation_enabled=True,
        translation_target_languages=("en",),
    ))
    updates = proto.classify({
        "header": {"event": "result-generated"},
        "payload": {"output": {
            "transcription": {"text": "你好", "sentence_end": True},
            "translations": [
                {"text": "hello", "lang": "en", "sentence_end": False},
                {"lang": "en"},
            ],
        }},
    }).updates

    assert [(u.kind, u.text, u.lang) for u in updates] == [
        (UpdateKind.FINAL, "你好", None),
        (UpdateKind.TRANSLATION_PARTIAL, "hello", "en"),
    ]


def test_sentence_output_is_accepted_as_transcription():
    proto = DuplexTaskProtocol(AsrSettings(model="fun-asr-realtime"))
    (u,) = proto.classify({
        "header": {"event": "result-generated"},
        "payload": {"output": {"sentence": {"text": "hi", "sentence_end": False}}},
    }).updates
    assert (u.kind, u.text) == (UpdateKind.PARTIAL, "hi")


def test_transcription_family_never_yields_translations():
    proto = DuplexTaskProtocol(AsrSettings(
        model="fun-asr-realtime",
        translation_enabled=True,
        translation_target_languages=("en",),
    ))
    updates = proto.classify({
        "header": {"event": "result-generated"},
        "payload": {"output": {
            "translations": [{"text": "hello", "lang": "en", "sentence_end": True}],
        }},
    }).updates
    assert updates == ()


def test_task_failed_maps_to_failed_update():
    proto = DuplexTaskProtocol(AsrSettings(model="fun-asr-realtime"))
    (u,) = proto.classify({"header": {"event": "task-failed", "error_message": "quota"}}).updates
    assert (u.kind, u.text) == (UpdateKind.FAILED, "quota")
