"""
Offer-and-pick flow for answers that ask the user to choose between named options,
e.g. "Which one would you like: 'Mentra Notes' or 'Mentra Notes [Dev]'?".

The detector decides whether an answer is such a question and records the offer;
the state object resolves the next utterance ("the first one", "the dev one",
"Mentra Notes") against it.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Sequence

import structlog

from .collaborators import AppCatalog, AppInfo, CandidateExtractor
from .timing import race_with_timeout


logger = structlog.get_logger(__name__)

Action = Literal["start", "stop"]

_ORDINALS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"\b(first|1st|1)\b"), 0),
    (re.compile(r"\b(second|2nd|2)\b"), 1),
    (re.compile(r"\b(third|3rd|3)\b"), 2),
    (re.compile(r"\b(fourth|4th|4)\b"), 3),
)
_BRACKET_RE = re.compile(r"\[([^\]]+)\]")
_BRACKETS_ALL_RE = re.compile(r"\[.*?\]")
_UTTERANCE_PUNCT_RE = re.compile(r"[.,!?]")
_QUOTED_RE = re.compile(r"'([^']+)'")
_SLUG_RE = re.compile(r"[^a-z0-9]+")

QUALIFIER_WORDS = frozenset({"dev", "beta", "test", "alpha", "prod", "staging", "debug"})
STOP_WORDS = ("close", "stop", "quit", "turn off", "shut down", "exit", "kill", "end", "terminate")
QUESTION_INDICATORS = ("which one", "which would you", "choose between", "multiple apps", "did you mean")


@dataclass(frozen=True)
class Candidate:
    name: str
    identifier: str
    description: Optional[str] = None


@dataclass(frozen=True)
class PendingDisambiguation:
    original_request: str
    candidates: tuple[Candidate, ...]
    action: Action
    created_at: float

    def expired(self, now: float, ttl_s: float) -> bool:
        return now - self.created_at >= ttl_s


@dataclass(frozen=True)
class Resolution:
    candidate: Candidate
    action: Action
    original_request: str
    matched_by: str


def _clean_utterance(text: str) -> str:
    return _UTTERANCE_PUNCT_RE.sub("", text.lower()).strip()


def _is_dev(name: str) -> bool:
    return "[dev" in name.lower()


def _is_beta(name: str) -> bool:
    n = name.lower()
    return "[beta" in n or "[test" in n


def match_candidate(utterance: str, candidates: Sequence[Candidate]) -> Optional[tuple[Candidate, str]]:
    """
    Deterministic ordered match of an utterance against the offered candidates.
    Returns (candidate, pass name) or None. Qualifier passes run before name
    passes so "notes beta" never resolves to the plain "Notes".
    """
    if not candidates:
        return None
    said = _clean_utterance(utterance)
    if not said:
        return None
    words = said.split()

    for pattern, index in _ORDINALS:
        if pattern.search(said) and index < len(candidates):
            return candidates[index], "ordinal"

    if "regular" in words:
        for c in candidates:
            n = c.name.lower()
            if "[" not in n and "dev" not in n and "test" not in n:
                return c, "regular"
        return candidates[0], "regular"

    for c in candidates:
        m = _BRACKET_RE.search(c.name)
        if m and m.group(1).lower().strip() in said:
            return c, "qualifier"

    if "dev" in words or "development" in words:
        for c in candidates:
            if _is_dev(c.name):
                return c, "dev keyword"
    if "beta" in words or "test" in words:
        for c in candidates:
            if _is_beta(c.name):
                return c, "beta keyword"

    for c in candidates:
        full = c.name.lower().strip()
        base = _BRACKETS_ALL_RE.sub("", full).strip()
        if said == full or said == base:
            return c, "exact name"

    ordered: Sequence[Candidate] = candidates
    if any(w in QUALIFIER_WORDS for w in words):
        # sorted() is stable: qualifier-bearing names first, offer order otherwise kept.
        ordered = sorted(candidates, key=lambda c: 0 if "[" in c.name else 1)
    for c in ordered:
        if c.name.lower().strip() in said:
            return c, "name contains"

    return None


def infer_action(request: str) -> Action:
    lowered = request.lower()
    return "stop" if any(re.search(rf"\b{w}\b", lowered) for w in STOP_WORDS) else "start"


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.lower()).strip("-")


class DisambiguationState:
    """At most one pending offer per session; it expires after ttl_s and is cleared on a match."""

    def __init__(self, ttl_s: float = 120.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_s = ttl_s
        self._clock = clock
        self._pending: Optional[PendingDisambiguation] = None

    @property
    def pending(self) -> Optional[PendingDisambiguation]:
        p = self._pending
        if p is not None and p.expired(self._clock(), self.ttl_s):
            logger.debug("disambiguation expired", original_request=p.original_request)
            self._pending = None
            return None
        return p

    def has_pending(self) -> bool:
        return self.pending is not None

    def offer(
        self, original_request: str, candidates: Sequence[Candidate], action: Action
    ) -> PendingDisambiguation:
        self._pending = PendingDisambiguation(
            original_request=original_request,
            candidates=tuple(candidates),
            action=action,
            created_at=self._clock(),
        )
        logger.info(
            "disambiguation offered",
            original_request=original_request,
            candidates=[c.name for c in candidates],
            action=action,
        )
        return self._pending

    def resolve(self, utterance: str) -> Optional[Resolution]:
        pending = self.pending
        if pending is None:
            return None
        hit = match_candidate(utterance, pending.candidates)
        if hit is None:
            logger.debug("disambiguation unmatched", utterance=utterance)
            return None
        candidate, matched_by = hit
        # Cleared before the caller runs the action so a late duplicate cannot fire it twice.
        self._pending = None
        logger.info("disambiguation resolved", candidate=candidate.name, matched_by=matched_by)
        return Resolution(
            candidate=candidate,
            action=pending.action,
            original_request=pending.original_request,
            matched_by=matched_by,
        )

    def clear(self) -> None:
        self._pending = None


def looks_like_choice_question(answer: str) -> bool:
    lowered = answer.lower()
    if len(answer) < 30:
        return False
    return "?" in answer or "which" in lowered or "choose" in lowered


def quoted_candidates(answer: str) -> list[str]:
    """Keyword fallback: quoted names in an answer that clearly asks the user to pick."""
    lowered = answer.lower()
    if not any(ind in lowered for ind in QUESTION_INDICATORS):
        return []
    names = [m.strip() for m in _QUOTED_RE.findall(answer) if m.strip()]
    return names if len(names) >= 2 else []


def _base_name(name: str) -> str:
    return re.sub(r"\s+", " ", _BRACKETS_ALL_RE.sub("", name.lower())).strip()


def _lookup_app(name: str, apps: Sequence[AppInfo]) -> Optional[AppInfo]:
    wanted = name.lower().strip()
    for app in apps:
        if app.name.lower().strip() == wanted:
            return app

    qualifier = _BRACKET_RE.search(name)
    if qualifier:
        q = qualifier.group(1).lower()
        base = _base_name(name)
        for app in apps:
            app_q = _BRACKET_RE.search(app.name)
            if not app_q or app_q.group(1).lower() != q:
                continue
            app_base = _base_name(app.name)
            if app_base == base or base in app_base or app_base in base:
                return app

    base = _base_name(name)
    for app in apps:
        if _base_name(app.name) == base:
            return app
    return None


class DisambiguationDetector:
    """Recognize choice questions in answers and register them as the pending offer."""

    def __init__(
        self,
        extractor: Optional[CandidateExtractor] = None,
        catalog: Optional[AppCatalog] = None,
        timeout_s: float = 5.0,
    ) -> None:
        self.extractor = extractor
        self.catalog = catalog
        self.timeout_s = timeout_s

    async def detect(self, answer: str) -> list[str]:
        if not looks_like_choice_question(answer):
            return []
        if self.extractor is None:
            return quoted_candidates(answer)
        try:
            names = await race_with_timeout(self.extractor.extract_candidates(answer), self.timeout_s)
        except Exception as exc:
            logger.warning("candidate extraction failed", error=str(exc))
            return quoted_candidates(answer)
        if names is None:
            logger.warning("candidate extraction timed out")
            return quoted_candidates(answer)
        return [n.strip() for n in names if n and n.strip()]

    async def lookup(self, names: Sequence[str]) -> list[Candidate]:
        if self.catalog is None:
            return [Candidate(name=n, identifier=slugify(n)) for n in names]
        try:
            apps = list(await self.catalog.list_apps())
        except Exception as exc:
            logger.warning("app catalog lookup failed", error=str(exc))
            return []
        found: list[Candidate] = []
        for name in names:
            app = _lookup_app(name, apps)
            if app is None:
                logger.debug("candidate not in catalog", name=name)
                continue
            found.append(Candidate(name=app.name, identifier=app.identifier, description=app.description))
        return found

    async def register(
        self, state: DisambiguationState, original_request: str, answer: str
    ) -> Optional[PendingDisambiguation]:
        names = await self.detect(answer)
        if len(names) < 2:
            return None
        candidates = await self.lookup(names)
        if len(candidates) < 2:
            logger.debug("not enough resolvable candidates", names=names)
            return None
        return state.offer(original_request, candidates, infer_action(original_request))
