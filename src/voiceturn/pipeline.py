from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import structlog

from .collaborators import AppCatalog, AppInfo, Responder, ResponderRequest, ResponseMode
from .deciders import MemoryDecider, MemoryDecision, ToolDecider, ToolDecision, VisionDecider, VisionDecision
from .disambiguation import DisambiguationDetector, DisambiguationState, Resolution
from .history import ConversationHistory
from .photo import PhotoCoordinator, PhotoData


logger = structlog.get_logger(__name__)

Route = Literal["disambiguation", "recall", "retry", "tool", "vision", "text", "clarify", "error"]

CLARIFY_QUESTION = "Do you want me to use the camera for that?"
ERROR_ANSWER = "Sorry, there was an error processing your request."
TIMEOUT_ANSWER = "Sorry, that took too long. Please try again."
NO_QUERY_ANSWER = "No query provided."

HISTORY_CONTEXT_MESSAGES = 10


@dataclass(frozen=True)
class DispatchResult:
    answer: str
    needs_visual_context: bool = False
    route: Route = "text"
    photo: Optional[PhotoData] = None

    @property
    def needs_clarification(self) -> bool:
        return self.route == "clarify"

    @property
    def deliverable(self) -> bool:
        """A real answer (not an error, timeout or clarification question)."""
        return self.route not in ("clarify", "error")


class QueryDispatchPipeline:
    """
    Route one finalized query. Steps run in strict precedence and the first
    one that claims the query wins:

    1. pending disambiguation
    2. memory recall / vision retry
    3. tool intent
    4. visual need (yes / no / ask the user)
    5. responder call, with a peek-then-wait photo on the vision path
    6. register the answer as a new disambiguation offer when it poses a choice
    """

    def __init__(
        self,
        responder: Responder,
        photos: PhotoCoordinator,
        disambiguation: DisambiguationState,
        history: ConversationHistory,
        *,
        detector: Optional[DisambiguationDetector] = None,
        memory: Optional[MemoryDecider] = None,
        tools: Optional[ToolDecider] = None,
        vision: Optional[VisionDecider] = None,
        catalog: Optional[AppCatalog] = None,
    ) -> None:
        self.responder = responder
        self.photos = photos
        self.disambiguation = disambiguation
        self.history = history
        self.detector = detector or DisambiguationDetector(catalog=catalog)
        self.memory = memory or MemoryDecider(None)
        self.tools = tools or ToolDecider(None)
        self.vision = vision or VisionDecider(None)
        self.catalog = catalog

    async def dispatch(self, query: str, *, visual_hint: Optional[bool] = None) -> DispatchResult:
        """
        Answer a query. visual_hint carries the user's answer to a clarification
        question; when given, classification is skipped and the vision decision is forced.
        """
        query = query.strip()
        if not query:
            return DispatchResult(NO_QUERY_ANSWER, route="error")

        if visual_hint is not None:
            if visual_hint:
                return await self._respond(query, mode="vision", route="vision")
            self.photos.clear()
            return await self._respond(query, mode="text", route="text")

        if self.disambiguation.has_pending():
            resolution = self.disambiguation.resolve(query)
            if resolution is not None:
                return DispatchResult(await self._execute(resolution), route="disambiguation")

        messages = self.history.messages(HISTORY_CONTEXT_MESSAGES)

        memory = await self.memory.decide(query, messages)
        logger.debug("memory decision", query=query, decision=memory.value)
        if memory is MemoryDecision.RECALL:
            self.photos.clear()
            return await self._respond(query, mode="recall", route="recall", history_limit=None)
        if memory is MemoryDecision.RETRY:
            previous = self.history.last_visual_query() or query
            self.photos.clear()
            self.photos.request_capture()
            return await self._respond(previous, mode="vision", route="retry")

        tool = await self.tools.decide(query, messages, await self._tool_names())
        logger.debug("tool decision", query=query, decision=tool.value)
        if tool is ToolDecision.TOOL:
            return await self._respond(query, mode="text", route="tool", minimal_tools=False)

        vision = await self.vision.decide(query, messages)
        logger.debug("vision decision", query=query, decision=vision.value)
        if vision is VisionDecision.UNSURE:
            return DispatchResult(CLARIFY_QUESTION, route="clarify")
        if vision is VisionDecision.YES:
            return await self._respond(query, mode="vision", route="vision")
        self.photos.clear()
        return await self._respond(query, mode="text", route="text")

    async def _tool_names(self) -> list[str]:
        if self.catalog is None:
            return []
        try:
            return [app.name for app in await self.catalog.list_apps()]
        except Exception as exc:
            logger.warning("app catalog unavailable", error=str(exc))
            return []

    async def _photo(self) -> Optional[PhotoData]:
        photo = await self.photos.get_photo(wait=False)
        if photo is not None:
            return photo
        if not self.photos.has_photo:
            self.photos.request_capture()
        return await self.photos.get_photo(wait=True)

    async def _respond(
        self,
        query: str,
        *,
        mode: ResponseMode,
        route: Route,
        minimal_tools: bool = True,
        history_limit: Optional[int] = HISTORY_CONTEXT_MESSAGES,
    ) -> DispatchResult:
        photo: Optional[PhotoData] = None
        if mode == "vision":
            photo = await self._photo()
            if photo is None:
                logger.warning("no photo available, answering from text", query=query)
                mode = "text"

        request = ResponderRequest(
            query=query,
            history=self.history.messages(history_limit),
            photo=photo,
            mode=mode,
            use_minimal_tools=minimal_tools,
        )
        try:
            result = await self.responder.respond(request)
        except Exception as exc:
            logger.warning("responder failed", route=route, error=str(exc))
            return DispatchResult(ERROR_ANSWER, route="error")

        answer = (result.answer or "").strip()
        if not answer:
            return DispatchResult(ERROR_ANSWER, route="error")

        try:
            await self.detector.register(self.disambiguation, query, answer)
        except Exception as exc:
            logger.warning("disambiguation detection failed", error=str(exc))

        return DispatchResult(
            answer,
            needs_visual_context=result.needs_visual_context,
            route=route,
            photo=photo,
        )

    async def _execute(self, resolution: Resolution) -> str:
        candidate = resolution.candidate
        if self.catalog is None:
            logger.warning("no app catalog, cannot run action", app=candidate.name)
            return f"Sorry, I can't {resolution.action} {candidate.name} right now."

        app = AppInfo(name=candidate.name, identifier=candidate.identifier, description=candidate.description)
        try:
            return await self.catalog.perform(resolution.action, app)
        except Exception as exc:
            logger.warning("app action failed", action=resolution.action, app=candidate.name, error=str(exc))
            return f"Sorry, I couldn't {resolution.action} {candidate.name}."
