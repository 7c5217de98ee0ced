from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return default if v is None or v.strip() == "" else v.strip()


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    items = tuple(p.strip().lower() for p in v.split(",") if p.strip())
    return items or default


@dataclass(frozen=True)
class Config:
    root_dir: Path

    host: str
    port: int

    data_dir: Path
    turns_dir: Path
    hf_home: Path

    whisper_model: str
    classifier_model: str
    responder_model: str
    vision_model: str

    device_preference: str  # "cpu" | "cuda" | "auto"

    wake_phrases: tuple[str, ...] = ("hey mentra",)
    tts_enabled: bool = False
    log_level: str = "info"

    stt_partial_interval_s: float = 0.8
    stt_partial_window_s: float = 8.0

    # Listening and turn-taking timers (seconds).
    max_listening_s: float = 15.0
    debounce_final_s: float = 1.5
    debounce_partial_s: float = 2.0
    debounce_trailing_wake_s: float = 10.0
    follow_up_window_s: float = 5.0
    clarification_timeout_s: float = 10.0
    head_up_window_s: float = 10.0
    cooldown_s: float = 1.0

    photo_wait_s: float = 3.0
    classifier_timeout_s: float = 5.0
    turn_timeout_s: float = 30.0

    disambiguation_ttl_s: float = 120.0

    history_max_turns: int = 30
    history_max_age_s: float = 3600.0


def load_config() -> Config:
    root_dir = Path(__file__).resolve().parents[2]

    host = _env_str("VOICETURN_HOST", "127.0.0.1")
    port = _env_int("VOICETURN_PORT", 7860)

    data_dir = Path(_env_str("VOICETURN_DATA_DIR", str(root_dir / "data")))
    turns_dir = data_dir / "turns"
    hf_home = Path(_env_str("HF_HOME", str(data_dir / "hf")))

    whisper_model = _env_str("VOICETURN_WHISPER_MODEL", "Systran/faster-whisper-base")
    classifier_model = _env_str("VOICETURN_CLASSIFIER_MODEL", "gpt-4o-mini")
    responder_model = _env_str("VOICETURN_RESPONDER_MODEL", "gpt-4o-mini")
    vision_model = _env_str("VOICETURN_VISION_MODEL", "gpt-4o")

    device_preference = _env_str("VOICETURN_DEVICE", "auto").lower()
    if device_preference not in ("auto", "cpu", "cuda"):
        device_preference = "auto"

    defaults = Config.__dataclass_fields__

    def _d(name: str):
        return defaults[name].default

    # Ensure directories exist (no prompts).
    data_dir.mkdir(parents=True, exist_ok=True)
    turns_dir.mkdir(parents=True, exist_ok=True)
    hf_home.mkdir(parents=True, exist_ok=True)

    return Config(
        root_dir=root_dir,
        host=host,
        port=port,
        data_dir=data_dir,
        turns_dir=turns_dir,
        hf_home=hf_home,
        whisper_model=whisper_model,
        classifier_model=classifier_model,
        responder_model=responder_model,
        vision_model=vision_model,
        device_preference=device_preference,
        wake_phrases=_env_list("VOICETURN_WAKE_PHRASES", _d("wake_phrases")),
        tts_enabled=_env_bool("VOICETURN_TTS", False),
        log_level=_env_str("VOICETURN_LOG_LEVEL", "info").lower(),
        max_listening_s=_env_float("VOICETURN_MAX_LISTENING_S", _d("max_listening_s")),
        debounce_final_s=_env_float("VOICETURN_DEBOUNCE_FINAL_S", _d("debounce_final_s")),
        debounce_partial_s=_env_float("VOICETURN_DEBOUNCE_PARTIAL_S", _d("debounce_partial_s")),
        debounce_trailing_wake_s=_env_float(
            "VOICETURN_DEBOUNCE_TRAILING_WAKE_S", _d("debounce_trailing_wake_s")
        ),
        follow_up_window_s=_env_float("VOICETURN_FOLLOW_UP_WINDOW_S", _d("follow_up_window_s")),
        clarification_timeout_s=_env_float(
            "VOICETURN_CLARIFICATION_TIMEOUT_S", _d("clarification_timeout_s")
        ),
        head_up_window_s=_env_float("VOICETURN_HEAD_UP_WINDOW_S", _d("head_up_window_s")),
        cooldown_s=_env_float("VOICETURN_COOLDOWN_S", _d("cooldown_s")),
        photo_wait_s=_env_float("VOICETURN_PHOTO_WAIT_S", _d("photo_wait_s")),
        classifier_timeout_s=_env_float("VOICETURN_CLASSIFIER_TIMEOUT_S", _d("classifier_timeout_s")),
        turn_timeout_s=_env_float("VOICETURN_TURN_TIMEOUT_S", _d("turn_timeout_s")),
        disambiguation_ttl_s=_env_float("VOICETURN_DISAMBIGUATION_TTL_S", _d("disambiguation_ttl_s")),
        history_max_turns=_env_int("VOICETURN_HISTORY_MAX_TURNS", _d("history_max_turns")),
        history_max_age_s=_env_float("VOICETURN_HISTORY_MAX_AGE_S", _d("history_max_age_s")),
    )
