from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import numpy as np

from .config import Config
from .session import TranscriptionEvent


LOCAL_SPEAKER_ID = "local"


@dataclass(frozen=True)
class SttResult:
    text: str
    is_final: bool

    def to_event(self, speaker_id: str = LOCAL_SPEAKER_ID) -> TranscriptionEvent:
        return TranscriptionEvent(speaker_id=speaker_id, text=self.text, is_final=self.is_final)


class SpeechToText:
    """
    Local faster-whisper transcription of the PCM16 stream the device sends.
    Partials re-decode the recent window so their text is cumulative, like a
    cloud transcription feed.
    """

    def __init__(self, cfg: Config):
        self._cfg = cfg
        self._model = None

    def _ensure_model(self) -> None:
        if self._model is not None:
            return

        from faster_whisper import WhisperModel  # heavy import, keep lazy

        pref = self._cfg.device_preference
        device = pref if pref in ("cpu", "cuda") else "auto"
        compute_type = "int8" if device == "cpu" else "default"

        download_root = Path(self._cfg.hf_home) / "whisper"
        download_root.mkdir(parents=True, exist_ok=True)

        # Prefer local-only first; fall back to auto-download if missing.
        try:
            self._model = WhisperModel(
                self._cfg.whisper_model,
                device=device,
                compute_type=compute_type,
                download_root=str(download_root),
                local_files_only=True,
            )
        except Exception:
            self._model = WhisperModel(
                self._cfg.whisper_model,
                device=device,
                compute_type=compute_type,
                download_root=str(download_root),
                local_files_only=False,
            )

    @staticmethod
    def pcm16_to_float32(pcm16: bytes) -> np.ndarray:
        if not pcm16:
            return np.zeros((0,), dtype=np.float32)
        a = np.frombuffer(pcm16, dtype=np.int16).astype(np.float32)
        return a / 32768.0

    def _transcribe(self, pcm16: bytes, *, final: bool) -> SttResult:
        audio = self.pcm16_to_float32(pcm16)
        if audio.size == 0:
            return SttResult(text="", is_final=final)
        self._ensure_model()

        # Audio from the device is expected to already be 16kHz mono PCM16.
        beam = 5 if final else 1
        segments, _info = self._model.transcribe(  # type: ignore[union-attr]
            audio,
            beam_size=beam,
            best_of=beam,
            vad_filter=final,
        )
        text = "".join(seg.text for seg in segments).strip()
        return SttResult(text=text, is_final=final)

    def transcribe_final(self, pcm16: bytes) -> SttResult:
        return self._transcribe(pcm16, final=True)

    def transcribe_partial(self, pcm16: bytes) -> SttResult:
        return self._transcribe(pcm16, final=False)


def slice_last_seconds(pcm16: bytearray, sample_rate: int, seconds: float) -> bytes:
    if sample_rate <= 0:
        return bytes(pcm16)
    bytes_per_sample = 2  # int16 mono
    max_bytes = int(sample_rate * seconds) * bytes_per_sample
    if len(pcm16) <= max_bytes:
        return bytes(pcm16)
    return bytes(pcm16[-max_bytes:])
