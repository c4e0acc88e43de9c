"""
Application configuration.

Responsibilities:
- Load deployment-specific configuration
- Read environment variables
- Provide a typed, immutable config object

Non-responsibilities:
- No coordination logic
- No protocol constants (see constants.py)
- No runtime mutation
"""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from typing import Any

from constants import (
    REORDER_WINDOW_DEFAULT,
    STOP_GRACE_MS_DEFAULT,
    TTS_MODE_DEFAULT,
    TTS_RESPONSE_FORMAT_DEFAULT,
    TTS_SAMPLE_RATE_HZ_DEFAULT,
)


# ------------------------------------------------------------------
# Parsing helpers (lenient: bad values fall back to defaults)
# ------------------------------------------------------------------

def _parse_bool(value: str | None, fallback: bool = False) -> bool:
    if value is None:
        return fallback
    return value.strip().lower() == "true"


def _parse_optional_bool(value: str | None) -> bool | None:
    if value is None:
        return None
    return _parse_bool(value)


def _parse_number(value: str | None, fallback: float) -> float:
    if value is None:
        return fallback
    try:
        result = float(value)
    except ValueError:
        return fallback
    # float() accepts "inf" and "nan"
    return result if math.isfinite(result) else fallback


def _parse_int(value: str | None, fallback: int, minimum: int | None = None) -> int:
    result = int(_parse_number(value, fallback))
    if minimum is not None and result < minimum:
        return fallback
    return result


def _parse_list(value: str | None, fallback: tuple[str, ...] = ()) -> tuple[str, ...]:
    if not value:
        return fallback
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _parse_json(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable application configuration.

    Constructed once at process startup.
    Passed downward to the coordinator and the bridges it builds.
    """

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    env: str = "dev"
    log_level: str = "INFO"
    debug_asr: bool = False
    port: int = 8080

    # ------------------------------------------------------------------
    # Sessions / capture
    # ------------------------------------------------------------------

    recordings_dir: str = "./recordings"
    reorder_window: int = REORDER_WINDOW_DEFAULT
    stop_grace_ms: int = STOP_GRACE_MS_DEFAULT

    # ------------------------------------------------------------------
    # ASR (DashScope)
    # ------------------------------------------------------------------

    dashscope_api_key: str | None = None
    asr_default_model: str = "fun-asr-realtime"
    asr_allow_models: tuple[str, ...] = ("fun-asr-realtime", "gummy-realtime-v1")
    asr_url_inference: str = "wss://dashscope.aliyuncs.com/api-ws/v1/inference"
    asr_url_realtime: str = "wss://dashscope.aliyuncs.com/api-ws/v1/realtime"
    asr_language: str = "en"
    asr_source_language: str | None = None

    vad_enabled: bool = True
    vad_silence_ms: int = 400
    vad_threshold: float = 0.0

    fun_asr_semantic_punctuation_enabled: bool | None = False
    fun_asr_max_sentence_silence_ms: int | None = 800
    fun_asr_multi_threshold_mode_enabled: bool | None = True

    translation_enabled: bool = True
    translation_target_languages: tuple[str, ...] = ("en",)

    # Verbatim session.update override for the event-stream protocol
    session_update_template: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # TTS (Qwen realtime)
    # ------------------------------------------------------------------

    tts_url: str = "wss://dashscope.aliyuncs.com/api-ws/v1/realtime"
    tts_model: str = "qwen-tts-realtime"
    tts_voice: str = "Cherry"
    tts_response_format: str = TTS_RESPONSE_FORMAT_DEFAULT
    tts_sample_rate: int = TTS_SAMPLE_RATE_HZ_DEFAULT
    tts_mode: str = TTS_MODE_DEFAULT
    tts_instructions: str | None = None
    tts_optimize_instructions: bool | None = None

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    @staticmethod
    def load_from_env() -> AppConfig:
        """
        Load configuration from environment variables.

        Missing or unparsable values fall back to the defaults above.
        """
        env = os.environ
        return AppConfig(
            env=env.get("ENV", "dev"),
            log_level=env.get("LOG_LEVEL", "INFO"),
            debug_asr="asr" in env.get("DEBUG", "").lower(),
            port=_parse_int(env.get("PORT"), 8080, minimum=1),

            recordings_dir=env.get("RECORDINGS_DIR", "./recordings"),
            reorder_window=_parse_int(env.get("REORDER_WINDOW"), REORDER_WINDOW_DEFAULT, minimum=1),
            stop_grace_ms=_parse_int(env.get("STOP_GRACE_MS"), STOP_GRACE_MS_DEFAULT, minimum=0),

            dashscope_api_key=env.get("DASHSCOPE_API_KEY"),
            asr_default_model=env.get("DASHSCOPE_MODEL", "fun-asr-realtime"),
            asr_allow_models=_parse_list(
                env.get("DASHSCOPE_ALLOW_MODELS"),
                ("fun-asr-realtime", "gummy-realtime-v1"),
            ),
            asr_url_inference=env.get(
                "DASHSCOPE_URL_INFERENCE",
                "wss://dashscope.aliyuncs.com/api-ws/v1/inference",
            ),
            asr_url_realtime=env.get(
                "DASHSCOPE_URL_REALTIME",
                "wss://dashscope.aliyuncs.com/api-ws/v1/realtime",
            ),
            asr_language=env.get("DASHSCOPE_LANGUAGE", "en"),
            asr_source_language=env.get("DASHSCOPE_SOURCE_LANGUAGE") or None,

            vad_enabled=_parse_bool(env.get("DASHSCOPE_VAD"), True),
            vad_silence_ms=_parse_int(env.get("DASHSCOPE_VAD_SILENCE_MS"), 400),
            vad_threshold=_parse_number(env.get("DASHSCOPE_VAD_THRESHOLD"), 0.0),

            fun_asr_semantic_punctuation_enabled=_parse_bool(
                env.get("DASHSCOPE_FUN_ASR_SEMANTIC_PUNCTUATION_ENABLED"), False
            ),
            fun_asr_max_sentence_silence_ms=_parse_int(
                env.get("DASHSCOPE_FUN_ASR_MAX_SENTENCE_SILENCE_MS"), 800
            ),
            fun_asr_multi_threshold_mode_enabled=_parse_bool(
                env.get("DASHSCOPE_FUN_ASR_MULTI_THRESHOLD_MODE_ENABLED"), True
            ),

            translation_enabled=_parse_bool(env.get("DASHSCOPE_TRANSLATION_ENABLED"), True),
            translation_target_languages=_parse_list(
                env.get("DASHSCOPE_TRANSLATION_TARGET"), ("en",)
            ),
            session_update_template=_parse_json(env.get("DASHSCOPE_SESSION_UPDATE")),

            tts_url=env.get("QWEN_TTS_URL", "wss://dashscope.aliyuncs.com/api-ws/v1/realtime"),
            tts_model=env.get("QWEN_TTS_MODEL", "qwen-tts-realtime"),
            tts_voice=env.get("QWEN_TTS_VOICE", "Cherry"),
            tts_response_format=env.get("QWEN_TTS_FORMAT", TTS_RESPONSE_FORMAT_DEFAULT),
            tts_sample_rate=_parse_int(env.get("QWEN_TTS_SAMPLE_RATE"), TTS_SAMPLE_RATE_HZ_DEFAULT, minimum=1),
            tts_mode=env.get("QWEN_TTS_MODE", TTS_MODE_DEFAULT),
            tts_instructions=env.get("QWEN_TTS_INSTRUCTIONS") or None,
            tts_optimize_instructions=_parse_optional_bool(
                env.get("QWEN_TTS_OPTIMIZE_INSTRUCTIONS")
            ),
        )
