"""Interfaces for the I/O collaborators the session core drives."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Optional, Protocol, Sequence

from .photo import PhotoData


ResponseMode = Literal["text", "vision", "recall"]


@dataclass(frozen=True)
class ResponderRequest:
    query: str
    history: Sequence[Mapping[str, str]] = ()
    photo: Optional[PhotoData] = None
    mode: ResponseMode = "text"
    use_minimal_tools: bool = True


@dataclass(frozen=True)
class ResponderResult:
    answer: str
    needs_visual_context: bool = False


@dataclass(frozen=True)
class AppInfo:
    name: str
    identifier: str
    description: Optional[str] = None
    running: bool = False
    extra: Mapping[str, Any] = field(default_factory=dict)


class Classifier(Protocol):
    async def classify(self, text: str, context: Mapping[str, Any]) -> str: ...


class CandidateExtractor(Protocol):
    async def extract_candidates(self, answer: str) -> Sequence[str]: ...


class Responder(Protocol):
    async def respond(self, request: ResponderRequest) -> ResponderResult: ...


class AppCatalog(Protocol):
    async def list_apps(self) -> Sequence[AppInfo]: ...

    async def perform(self, action: str, app: AppInfo) -> str: ...


class Sink(Protocol):
    """Playback/display side of the device."""

    async def show_status(self, phase: str, detail: str = "") -> None: ...

    async def deliver_answer(self, text: str, needs_visual_context: bool = False) -> None: ...

    async def acknowledge(self, kind: str) -> None: ...


class TurnRecorder(Protocol):
    async def record(self, query: str, response: str, photo: Optional[PhotoData]) -> None: ...
