"""
Routing decisions for a finalized query.

Each decider runs a regex fast check first, asks its classifier collaborator
only when the fast check is inconclusive, and falls back to a keyword check
when the classifier fails or times out.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

import structlog

from .collaborators import Classifier
from .timing import race_with_timeout


logger = structlog.get_logger(__name__)


class MemoryDecision(str, Enum):
    RECALL = "recall"
    RETRY = "retry"
    CONTINUE = "continue"


class ToolDecision(str, Enum):
    TOOL = "tool"
    NO_TOOL = "no_tool"


class VisionDecision(str, Enum):
    YES = "yes"
    NO = "no"
    UNSURE = "unsure"


class FollowUpDecision(str, Enum):
    AFFIRMATIVE = "affirmative"
    CANCEL = "cancel"
    CONTINUE = "continue"


def _any(patterns: Sequence[re.Pattern[str]], text: str) -> bool:
    return any(p.search(text) for p in patterns)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


CURRENT_STATE_PATTERNS = _compile(
    r"what apps? (am i|are|is) running",
    r"which apps? (am i|are|is) running",
    r"what am i running",
    r"what('s| is| are) running (right )?now",
    r"which apps? are (running|active|open|on)",
    r"list (my |the )?(running |active )?(apps?|applications?)",
    r"show (me )?(my |the )?(running |active )?(apps?|applications?)",
    r"what (apps?|applications?) (do i have |are |is )(running|active|open|on)",
    r"are there any apps? running",
    r"what('s| is) (currently )?running",
    r"get (me )?(the |my )?(current |running |active )?(apps?|app list)",
)

VISUAL_REFERENCE_PATTERNS = _compile(
    r"\b(what|solve|read|identify|translate|look at|see|describe)\b.*\b(this|that)\b",
    r"\b(this|that)\b.*\b(equation|sign|text|object|thing|item|product|plant|food)\b",
    r"what is (this|that)\b",
    r"what kind of .* is (this|that)",
    r"how (do i|to) (use|fix|solve) (this|that)",
    r"what am i (working on|looking at|seeing|doing)",
    r"what('s| is) in front of (me|you)",
    r"what('s| is) (around me|near me|beside me)",
)

RECALL_PATTERNS = _compile(
    r"what did (i|you) (just )?(ask|say|mention)",
    r"my (last|previous) (question|query)",
    r"repeat that|say that again",
    r"previously (talked|asked|mentioned|discussed|said)",
    r"back to the .+ (i|we) (talked|asked|mentioned|discussed)",
    r"what were we talking about",
)

RETRY_PATTERNS = _compile(
    r"^(please )?(try|do) (that|it) again\b",
    r"^(please )?try again\b",
    r"^(take|get) (another|a new) (look|photo|picture)\b",
    r"^look again\b",
    r"^(one more|another) (try|time)\b",
)

TOOL_PATTERNS = _compile(
    r"\b(start|stop|begin|end|pause|resume) recording\b",
    r"\b(take|make|add|create|save|write) (a )?(note|memo)\b",
    r"^note that\b",
    r"\b(add|create|set|make) (a )?(reminder|alert)\b",
    r"^remind me\b",
    r"\b(list|show|get|display|what are) (my |all )?(notes|reminders|recordings|memos)\b",
    r"\b(delete|remove|clear) (the |my |that )?(note|reminder|recording|memo)\b",
    r"\b(mark|complete|finish|done|check off) .*(reminder|task)\b",
    r"\b(new|start|begin) (a )?(conversation|session)\b",
    r"\bsearch (my )?(conversation|history|notes)\b",
    r"\b(open|launch|start|close|quit|stop|exit) (the )?[a-z0-9 ]*\bapp\b",
)

NO_TOOL_PATTERNS = _compile(
    r"^(hi|hello|hey|yo|sup|what's up|how are you|good morning|good afternoon|good evening|howdy)\b",
    r"^(what('s| is) the (weather|time|date)|set a timer|play music|what time is it)\b",
    r"^(thanks?|thank you|bye|goodbye|see you|later|good night)\b",
    r"^(what can you do|who are you|what are you|are you)\b",
    r"\b(what is this|what's this|what am i looking at|read this|identify this|what do you see)\b",
    r"^(tell me a joke|make me laugh|say something funny|let's chat)\b",
)
_GENERAL_KNOWLEDGE = re.compile(r"^(what is|who is|who was|what are|explain|define|tell me about|describe) [a-z]", re.I)
_APP_DATA_REFERENCE = re.compile(r"\b(this|that|my|the)\b.*\b(note|reminder|recording)\b", re.I)

TOOL_KEYWORDS = (
    "start recording", "stop recording", "take a note", "take note", "add reminder",
    "set reminder", "remind me", "list notes", "show notes", "my notes", "my reminders",
    "delete note", "remove reminder", "new conversation", "search conversation",
)

STRONG_VISION_PHRASES = (
    "look at", "looking at", "see this", "see that", "read this", "read that",
    "identify", "what color", "what colour", "translate this", "translate that",
)
_DEMONSTRATIVE_RE = re.compile(r"\b(this|that|these|those)\b", re.I)
VISION_ACTIONS = ("fix", "solve", "diagnose", "wrong", "broken", "use", "work")

AFFIRMATIVE_PHRASES = frozenset({
    "ok", "okay", "alright", "thanks", "thank you", "thanx", "thx", "ty",
    "got it", "understood", "i understand", "makes sense", "that works", "perfect",
    "ok thanks", "ok thank you", "okay thanks", "okay thank you",
    "alright thanks", "alright thank you",
    "thank you so much", "thanks so much", "thank you very much", "thanks very much",
    "sounds good", "sounds great", "sounds perfect", "sounds nice",
    "yes thank you", "yeah thanks", "yep thanks", "sure thanks",
    "yes thanks", "yeah thank you", "sure thank you",
    "cool", "great", "awesome", "nice", "bye", "goodbye",
})
NEGATED_AFFIRMATIVE = _compile(
    r"^(no|nope|nah|naw)\s+(thank|thanks|thank you|thanx|thx)",
    r"^(uh|um|uhh|umm)?\s*(no|nope|nah|naw)\s+(thank|thanks|thank you|thanx|thx)",
)
NON_CANCELLATION_PATTERNS = _compile(
    r"how (do i|to|can i) cancel",
    r"cancel my (subscription|order|booking)",
    r"what does .* cancel",
    r"stop (the|my|a) (timer|alarm|music)",
    r"stop playing",
    r"ignore (the|my|this|that) (error|warning|notification)",
    r"never mind (the|my|this|that)",
)
OBVIOUS_CANCELLATIONS = (
    "stop", "cancel", "never mind", "nevermind", "quit", "abort",
    "no no", "stop stop", "forget it", "shut up",
)

_YES_RE = re.compile(r"^(yes|yeah|yep|yup|sure|correct|right|please do|go ahead|do it|ok|okay|absolutely|of course)\b", re.I)
_NO_RE = re.compile(r"^(no|nope|nah|naw|don't|do not|not really|negative|never mind|nevermind)\b", re.I)

_FOLLOW_UP_PUNCT_RE = re.compile(r"[.,!?;:'\"-]")


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", _FOLLOW_UP_PUNCT_RE.sub("", text.lower())).strip()


def is_current_state_query(query: str) -> bool:
    return _any(CURRENT_STATE_PATTERNS, query.lower())


def parse_yes_no(text: str) -> Optional[bool]:
    t = text.strip().lower()
    if _NO_RE.search(t):
        return False
    if _YES_RE.search(t):
        return True
    return None


def format_context(history: Sequence[Mapping[str, str]], limit: int = 4) -> str:
    if not history:
        return "Recent conversation context: (no previous messages)"
    lines = []
    for msg in list(history)[-limit:]:
        who = "User" if msg.get("role") == "user" else "Assistant"
        content = msg.get("content", "")
        if len(content) > 150:
            content = content[:150] + "..."
        lines.append(f"{who}: {content}")
    return "Recent conversation context:\n" + "\n".join(lines)


class _ClassifierDecider:
    def __init__(self, classifier: Optional[Classifier], timeout_s: float = 5.0) -> None:
        self.classifier = classifier
        self.timeout_s = timeout_s

    async def _ask(self, text: str, context: Mapping[str, Any]) -> Optional[str]:
        """Return the classifier's label, or None when unavailable, failed or too slow."""
        if self.classifier is None:
            return None
        try:
            label = await race_with_timeout(self.classifier.classify(text, context), self.timeout_s)
        except Exception as exc:
            logger.warning("classifier failed", decider=type(self).__name__, error=str(exc))
            return None
        if label is None:
            logger.warning("classifier timed out", decider=type(self).__name__)
            return None
        return str(label).strip().lower()


class MemoryDecider(_ClassifierDecider):
    """Does the query recall earlier conversation, retry a visual query, or neither?"""

    def fast_check(self, query: str) -> Optional[MemoryDecision]:
        q = query.lower().strip()
        if is_current_state_query(q):
            return MemoryDecision.CONTINUE
        if _any(RETRY_PATTERNS, q):
            return MemoryDecision.RETRY
        if _any(VISUAL_REFERENCE_PATTERNS, q):
            return MemoryDecision.CONTINUE
        if _any(RECALL_PATTERNS, q):
            return MemoryDecision.RECALL
        return None

    async def decide(self, query: str, history: Sequence[Mapping[str, str]]) -> MemoryDecision:
        fast = self.fast_check(query)
        if fast is not None:
            return fast
        if not history:
            return MemoryDecision.CONTINUE
        label = await self._ask(query, {"conversation": format_context(history)})
        if label is not None:
            for decision in MemoryDecision:
                if label.startswith(decision.value):
                    return decision
        return MemoryDecision.CONTINUE


class ToolDecider(_ClassifierDecider):
    """Does the query target an external app/tool integration?"""

    def fast_check(self, query: str) -> Optional[ToolDecision]:
        q = query.lower().strip()
        if is_current_state_query(q) or _any(TOOL_PATTERNS, q):
            return ToolDecision.TOOL
        if _any(NO_TOOL_PATTERNS, q):
            return ToolDecision.NO_TOOL
        if _GENERAL_KNOWLEDGE.search(q) and not _APP_DATA_REFERENCE.search(q):
            return ToolDecision.NO_TOOL
        return None

    def fallback(self, query: str) -> ToolDecision:
        q = query.lower()
        return ToolDecision.TOOL if any(k in q for k in TOOL_KEYWORDS) else ToolDecision.NO_TOOL

    async def decide(
        self,
        query: str,
        history: Sequence[Mapping[str, str]],
        tools: Sequence[str] = (),
    ) -> ToolDecision:
        fast = self.fast_check(query)
        if fast is not None:
            return fast
        label = await self._ask(
            query,
            {"conversation": format_context(history), "tools": "\n".join(f"- {t}" for t in tools)},
        )
        if label is None:
            return self.fallback(query)
        # An unsure tool verdict keeps the minimal tool set.
        return ToolDecision.TOOL if label.startswith("tool") else ToolDecision.NO_TOOL


class VisionDecider(_ClassifierDecider):
    """Does answering require what the camera sees right now?"""

    def fallback(self, query: str) -> VisionDecision:
        q = query.lower()
        if any(p in q for p in STRONG_VISION_PHRASES):
            return VisionDecision.YES
        if _DEMONSTRATIVE_RE.search(q):
            if any(a in q for a in VISION_ACTIONS):
                return VisionDecision.YES
            return VisionDecision.UNSURE
        return VisionDecision.NO

    async def decide(self, query: str, history: Sequence[Mapping[str, str]]) -> VisionDecision:
        label = await self._ask(query, {"conversation": format_context(history)})
        if label is None:
            return self.fallback(query)
        if label.startswith("yes"):
            return VisionDecision.YES
        if label.startswith("unsure"):
            return VisionDecision.UNSURE
        return VisionDecision.NO


class FollowUpDecider(_ClassifierDecider):
    """Classify an utterance heard in the follow-up window: closing, cancel, or a new query."""

    def is_affirmative(self, text: str) -> bool:
        t = _normalize(text)
        if _any(NEGATED_AFFIRMATIVE, t):
            return False
        return t in AFFIRMATIVE_PHRASES

    def is_non_cancellation(self, text: str) -> bool:
        return _any(NON_CANCELLATION_PATTERNS, text.lower())

    def is_obvious_cancellation(self, text: str) -> bool:
        t = _normalize(text)
        return any(t == p or t.startswith(p + " ") for p in OBVIOUS_CANCELLATIONS)

    async def decide(self, text: str) -> FollowUpDecision:
        t = _normalize(text)
        if _any(NEGATED_AFFIRMATIVE, t):
            affirmative = False
        else:
            label = await self._ask(text, {})
            affirmative = label.startswith("yes") if label is not None else self.is_affirmative(text)
        if affirmative:
            return FollowUpDecision.AFFIRMATIVE
        if self.is_non_cancellation(text):
            return FollowUpDecision.CONTINUE
        if self.is_obvious_cancellation(text):
            return FollowUpDecision.CANCEL
        return FollowUpDecision.CONTINUE
