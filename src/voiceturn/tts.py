from __future__ import annotations

import threading

import structlog


logger = structlog.get_logger(__name__)


def speak_async(text: str, enabled: bool) -> None:
    """Speak on the host's audio device in a background thread (VOICETURN_TTS)."""
    if not enabled or not text.strip():
        return

    def _run() -> None:
        try:
            import pyttsx3  # type: ignore

            engine = pyttsx3.init()
            engine.say(text)
            engine.runAndWait()
        except Exception as exc:
            logger.warning("local speech failed", error=str(exc))

    threading.Thread(target=_run, daemon=True).start()
