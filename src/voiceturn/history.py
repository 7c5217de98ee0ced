"""Bounded, time-windowed conversation memory for one session."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional


@dataclass(frozen=True)
class ConversationTurn:
    query: str
    response: str
    timestamp: float
    visual: bool = False
    photo_timestamp: Optional[float] = None


class ConversationHistory:
    """Keep the most recent turns; evict past max_turns or max_age_s, whichever first."""

    def __init__(
        self,
        max_turns: int = 30,
        max_age_s: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_turns = max(1, int(max_turns))
        self.max_age_s = max_age_s
        self._clock = clock
        self._turns: list[ConversationTurn] = []

    def _prune(self) -> None:
        now = self._clock()
        self._turns = [t for t in self._turns if now - t.timestamp < self.max_age_s]
        if len(self._turns) > self.max_turns:
            self._turns = self._turns[-self.max_turns :]

    def add(
        self,
        query: str,
        response: str,
        *,
        visual: bool = False,
        photo_timestamp: Optional[float] = None,
    ) -> ConversationTurn:
        turn = ConversationTurn(
            query=query.strip(),
            response=response.strip(),
            timestamp=self._clock(),
            visual=visual,
            photo_timestamp=photo_timestamp,
        )
        self._turns.append(turn)
        self._prune()
        return turn

    def turns(self) -> list[ConversationTurn]:
        self._prune()
        return list(self._turns)

    def messages(self, limit: Optional[int] = None) -> list[dict[str, str]]:
        """Return user/assistant message pairs, optionally only the last `limit` messages."""
        out: list[dict[str, str]] = []
        for turn in self.turns():
            out.append({"role": "user", "content": turn.query})
            out.append({"role": "assistant", "content": turn.response})
        return out[-limit:] if limit else out

    def last_visual_query(self) -> Optional[str]:
        for turn in reversed(self.turns()):
            if turn.visual:
                return turn.query
        return None

    def clear(self) -> None:
        self._turns = []

    def __len__(self) -> int:
        return len(self.turns())
