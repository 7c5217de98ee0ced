from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping, Optional

from .disambiguation import DisambiguationState
from .history import ConversationHistory
from .photo import PhotoCoordinator

if TYPE_CHECKING:
    from .controller import SessionController


class State(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    FOLLOW_UP = "follow_up"
    CLARIFICATION = "clarification"


@dataclass(frozen=True)
class UserSettings:
    follow_up_enabled: bool = True
    wake_requires_head_up: bool = False

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "UserSettings":
        data = data or {}
        return cls(
            follow_up_enabled=bool(data.get("follow_up_enabled", True)),
            wake_requires_head_up=bool(data.get("wake_requires_head_up", False)),
        )


@dataclass(frozen=True)
class TranscriptionEvent:
    speaker_id: str
    text: str  # cumulative within the utterance
    is_final: bool
    received_at: float = field(default_factory=time.time)


@dataclass
class Session:
    """Everything one device connection owns. Nothing here is shared across sessions."""

    photos: PhotoCoordinator
    disambiguation: DisambiguationState
    history: ConversationHistory

    user_id: str = "anonymous"
    settings: UserSettings = field(default_factory=UserSettings)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    state: State = State.IDLE
    active_speaker: Optional[str] = None
    last_processed_text: str = ""

    generation: int = 0

    controller: Optional["SessionController"] = None

    def bump_generation(self) -> int:
        self.generation += 1
        return self.generation

    def close(self) -> None:
        if self.controller is not None:
            self.controller.close()
        self.photos.clear()
        self.disambiguation.clear()
        self.state = State.IDLE
        self.active_speaker = None
