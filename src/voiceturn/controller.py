"""
Turn-taking state machine for one session.

IDLE -> LISTENING on a wake phrase, LISTENING -> PROCESSING when the debounce
(or the max-listening safety) timer fires, PROCESSING -> FOLLOW_UP / IDLE when
the answer is delivered. CLARIFICATION is a short yes/no listening variant used
when the pipeline cannot tell whether the camera is needed.

Every asynchronous completion (timer, turn task) captures the session's
generation number and does nothing if it has moved on.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from .collaborators import Sink, TurnRecorder
from .config import Config
from .deciders import FollowUpDecider, FollowUpDecision, parse_yes_no
from .disambiguation import DisambiguationState
from .history import ConversationHistory
from .photo import CaptureFn, PhotoCoordinator
from .pipeline import (
    CLARIFY_QUESTION,
    ERROR_ANSWER,
    NO_QUERY_ANSWER,
    TIMEOUT_ANSWER,
    DispatchResult,
    QueryDispatchPipeline,
)
from .session import Session, State, TranscriptionEvent, UserSettings
from .timing import Timer
from .wake import WakePhraseMatcher, clean_text


logger = structlog.get_logger(__name__)

STATUS_PREVIEW_CHARS = 60


@dataclass
class _TurnRun:
    generation: int
    query: str
    aborted: bool = False


class SessionController:
    def __init__(
        self,
        session: Session,
        pipeline: QueryDispatchPipeline,
        sink: Sink,
        cfg: Config,
        *,
        matcher: Optional[WakePhraseMatcher] = None,
        follow_up: Optional[FollowUpDecider] = None,
        recorder: Optional[TurnRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.pipeline = pipeline
        self.sink = sink
        self.cfg = cfg
        self.matcher = matcher or WakePhraseMatcher(cfg.wake_phrases)
        self.follow_up = follow_up or FollowUpDecider(None)
        self.recorder = recorder
        self._clock = clock

        self._debounce = Timer("debounce")
        self._max_listen = Timer("max_listening")
        self._follow_up_timer = Timer("follow_up")
        self._clarification_timer = Timer("clarification")

        self._utterance = ""
        self._heard = ""
        self._follow_up_turn = False
        self._clarify_query: Optional[str] = None
        self._run: Optional[_TurnRun] = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._cooldown_until = 0.0
        self._head_position: Optional[str] = None
        self._head_up_until = 0.0
        self._closed = False

    # -- plumbing -----------------------------------------------------------

    @property
    def state(self) -> State:
        return self.session.state

    def _set_state(self, state: State) -> None:
        if self.session.state is not state:
            logger.debug(
                "state change",
                session_id=self.session.session_id,
                generation=self.session.generation,
                old=self.session.state.value,
                new=state.value,
            )
        self.session.state = state

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("session task failed", session_id=self.session.session_id, exc_info=exc)

    async def _status(self, phase: str, detail: str = "") -> None:
        try:
            await self.sink.show_status(phase, detail)
        except Exception as exc:
            logger.warning("status delivery failed", phase=phase, error=str(exc))

    async def _ack(self, kind: str) -> None:
        try:
            await self.sink.acknowledge(kind)
        except Exception as exc:
            logger.warning("ack delivery failed", kind=kind, error=str(exc))

    def _cancel_timers(self) -> None:
        self._debounce.cancel()
        self._max_listen.cancel()
        self._follow_up_timer.cancel()
        self._clarification_timer.cancel()

    def _reset_to_idle(self) -> None:
        self._cancel_timers()
        self._utterance = ""
        self._follow_up_turn = False
        self._clarify_query = None
        self.session.active_speaker = None
        self.session.photos.clear()
        self._set_state(State.IDLE)

    def _current(self, generation: int) -> bool:
        return not self._closed and generation == self.session.generation

    # -- inputs ---------------------------------------------------------------

    def handle_head_position(self, position: str) -> None:
        """A down->up transition opens the wake window when wake_requires_head_up is set."""
        current = (position or "").strip().lower()
        if not current:
            return
        if self._head_position == "down" and current == "up":
            self._head_up_until = self._clock() + self.cfg.head_up_window_s
            logger.debug("head-up wake window opened", session_id=self.session.session_id)
        self._head_position = current

    def _unseen_text(self, text: str) -> str:
        """Drop the part of a cumulative transcript that already produced a turn.

        last_processed_text is kept in clean_text form, so a late revision that
        only changes case or punctuation counts as already seen.
        """
        last = self.session.last_processed_text
        if not last:
            return text
        cleaned = clean_text(text)
        if cleaned.startswith(last):
            return cleaned[len(last) :].strip()
        self.session.last_processed_text = ""
        return text

    def handle_event(self, event: TranscriptionEvent) -> None:
        if self._closed:
            return
        text = self._unseen_text(event.text.strip())
        if not text:
            return

        # The locked speaker owns the session until it returns to IDLE.
        if self.session.active_speaker is not None and event.speaker_id != self.session.active_speaker:
            logger.debug("event from other speaker dropped", speaker_id=event.speaker_id)
            return

        state = self.session.state
        if state is State.PROCESSING:
            if self.matcher.has_wake_phrase(text):
                self._interrupt()
                self._on_wake(event, text)
            return

        if state is State.IDLE:
            if not self.matcher.has_wake_phrase(text):
                return
            if self._clock() < self._cooldown_until:
                logger.debug("wake phrase ignored during cooldown", session_id=self.session.session_id)
                return
            if self.session.settings.wake_requires_head_up and self._clock() > self._head_up_until:
                logger.debug("wake phrase ignored outside head-up window", session_id=self.session.session_id)
                return
            self._on_wake(event, text)
            return

        if state is State.FOLLOW_UP:
            self._follow_up_timer.cancel()
            self._follow_up_turn = True
            self._set_state(State.LISTENING)
            self._max_listen.schedule(self.cfg.max_listening_s, self._on_utterance_complete, self.session.generation)
            self._on_listening(event, text)
        elif state is State.LISTENING:
            self._on_listening(event, text)
        elif state is State.CLARIFICATION:
            self._utterance = text
            self._heard = clean_text(event.text)
            self._debounce.schedule(
                self._debounce_delay(event, text), self._on_clarification_reply, self.session.generation
            )

    # -- listening ------------------------------------------------------------

    def _on_wake(self, event: TranscriptionEvent, text: str) -> None:
        if event.is_final and self.matcher.is_cancellation(self.matcher.strip_wake_phrase(text)):
            self._cancel_turn()
            return

        self.session.active_speaker = event.speaker_id
        self.session.photos.request_capture()
        self._set_state(State.LISTENING)
        self._max_listen.schedule(self.cfg.max_listening_s, self._on_utterance_complete, self.session.generation)
        logger.info("wake phrase detected", session_id=self.session.session_id, speaker_id=event.speaker_id)
        self._on_listening(event, text)

    def _on_listening(self, event: TranscriptionEvent, text: str) -> None:
        self._utterance = text
        self._heard = clean_text(event.text)
        preview = self.matcher.strip_wake_phrase(text)
        self._spawn(self._status("listening", preview or "Listening..."))
        self._debounce.schedule(
            self._debounce_delay(event, text), self._on_utterance_complete, self.session.generation
        )

    def _debounce_delay(self, event: TranscriptionEvent, text: str) -> float:
        if not event.is_final:
            return self.cfg.debounce_partial_s
        if self.matcher.ends_with_wake_phrase(text):
            return self.cfg.debounce_trailing_wake_s
        return self.cfg.debounce_final_s

    def _cancel_turn(self) -> None:
        logger.info("turn cancelled", session_id=self.session.session_id)
        self._reset_to_idle()
        self._spawn(self._ack("cancel"))
        self._spawn(self._status("idle", "Cancelled"))

    def _on_utterance_complete(self, generation: int) -> None:
        if not self._current(generation) or self.session.state is not State.LISTENING:
            return
        self._debounce.cancel()
        self._max_listen.cancel()

        raw = self._utterance
        self.session.last_processed_text = self._heard
        query = self.matcher.strip_wake_phrase(raw)
        follow_up = self._follow_up_turn
        self._utterance = ""
        self._follow_up_turn = False

        if not query:
            logger.info("empty query", session_id=self.session.session_id)
            self._reset_to_idle()
            self._spawn(self._status("idle", NO_QUERY_ANSWER))
            return
        if not follow_up and self.matcher.is_cancellation(query):
            self._cancel_turn()
            return

        self._start_turn(query, follow_up=follow_up)

    # -- processing -----------------------------------------------------------

    def _start_turn(self, query: str, *, visual_hint: Optional[bool] = None, follow_up: bool = False) -> None:
        self._set_state(State.PROCESSING)
        run = _TurnRun(generation=self.session.generation, query=query)
        self._run = run
        self._spawn(self._run_turn(run, visual_hint=visual_hint, follow_up=follow_up))

    def _interrupt(self) -> None:
        generation = self.session.bump_generation()
        if self._run is not None:
            self._run.aborted = True
        logger.info("turn interrupted", session_id=self.session.session_id, generation=generation)
        self._reset_to_idle()

    async def _run_turn(self, run: _TurnRun, *, visual_hint: Optional[bool], follow_up: bool) -> None:
        query = run.query
        if follow_up:
            decision = await self.follow_up.decide(query)
            if run.aborted or not self._current(run.generation):
                return
            if decision is FollowUpDecision.AFFIRMATIVE:
                logger.info("follow-up closed", session_id=self.session.session_id)
                self._finish(follow_up=False)
                await self._ack("closing")
                return
            if decision is FollowUpDecision.CANCEL:
                logger.info("follow-up cancelled", session_id=self.session.session_id)
                self._finish(follow_up=False)
                return

        preview = query[:STATUS_PREVIEW_CHARS]
        await self._status("processing", f"Processing query: {preview}...")

        try:
            result = await asyncio.wait_for(
                self.pipeline.dispatch(query, visual_hint=visual_hint), self.cfg.turn_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("turn timed out", session_id=self.session.session_id, query=query)
            result = DispatchResult(TIMEOUT_ANSWER, route="error")
        except Exception:
            logger.error("turn failed", session_id=self.session.session_id, query=query, exc_info=True)
            result = DispatchResult(ERROR_ANSWER, route="error")

        if run.aborted or not self._current(run.generation):
            logger.info(
                "stale turn discarded",
                session_id=self.session.session_id,
                generation=run.generation,
                current=self.session.generation,
            )
            return

        if result.needs_clarification:
            self._enter_clarification(query)
            await self._deliver(CLARIFY_QUESTION, False)
            return

        await self._deliver(result.answer, result.needs_visual_context)
        if result.deliverable:
            self._remember(query, result)

        if run.aborted or not self._current(run.generation):
            return
        self._finish(follow_up=result.deliverable)

    async def _deliver(self, text: str, needs_visual_context: bool) -> None:
        try:
            await self.sink.deliver_answer(text, needs_visual_context)
        except Exception as exc:
            logger.warning("answer delivery failed", session_id=self.session.session_id, error=str(exc))

    def _remember(self, query: str, result: DispatchResult) -> None:
        photo = result.photo
        self.session.history.add(
            query,
            result.answer,
            visual=result.route in ("vision", "retry"),
            photo_timestamp=photo.captured_at if photo is not None else None,
        )
        if self.recorder is not None:
            self._spawn(self._record(query, result))

    async def _record(self, query: str, result: DispatchResult) -> None:
        try:
            await self.recorder.record(query, result.answer, result.photo)
        except Exception as exc:
            logger.warning("turn persistence failed", session_id=self.session.session_id, error=str(exc))

    def _finish(self, *, follow_up: bool) -> None:
        self._cooldown_until = self._clock() + self.cfg.cooldown_s
        if follow_up and self.session.settings.follow_up_enabled:
            self._cancel_timers()
            self._utterance = ""
            self.session.photos.clear()
            self._set_state(State.FOLLOW_UP)
            self._follow_up_timer.schedule(
                self.cfg.follow_up_window_s, self._on_follow_up_timeout, self.session.generation
            )
            return
        self._reset_to_idle()

    def _on_follow_up_timeout(self, generation: int) -> None:
        if not self._current(generation) or self.session.state is not State.FOLLOW_UP:
            return
        logger.debug("follow-up window elapsed", session_id=self.session.session_id)
        self._reset_to_idle()
        self._spawn(self._ack("cancel"))

    # -- clarification ----------------------------------------------------------

    def _enter_clarification(self, query: str) -> None:
        self._cancel_timers()
        self._clarify_query = query
        self._utterance = ""
        self._set_state(State.CLARIFICATION)
        self._clarification_timer.schedule(
            self.cfg.clarification_timeout_s, self._resume_clarified, self.session.generation, False
        )

    def _on_clarification_reply(self, generation: int) -> None:
        if not self._current(generation) or self.session.state is not State.CLARIFICATION:
            return
        raw = self._utterance
        self.session.last_processed_text = self._heard
        answer = parse_yes_no(self.matcher.strip_wake_phrase(raw))
        logger.info("clarification answered", session_id=self.session.session_id, answer=answer)
        self._resume_clarified(generation, bool(answer))

    def _resume_clarified(self, generation: int, use_camera: bool) -> None:
        if not self._current(generation) or self.session.state is not State.CLARIFICATION:
            return
        query = self._clarify_query
        self._debounce.cancel()
        self._clarification_timer.cancel()
        self._clarify_query = None
        self._utterance = ""
        if not query:
            self._reset_to_idle()
            return
        self._start_turn(query, visual_hint=use_camera)

    # -- teardown ---------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.session.bump_generation()
        if self._run is not None:
            self._run.aborted = True
        self._cancel_timers()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        logger.info("session closed", session_id=self.session.session_id)


def build_session(
    cfg: Config,
    sink: Sink,
    pipeline_factory: Callable[[Session], QueryDispatchPipeline],
    *,
    capture: Optional[CaptureFn] = None,
    user_id: str = "anonymous",
    settings: Optional[UserSettings] = None,
    follow_up: Optional[FollowUpDecider] = None,
    recorder: Optional[TurnRecorder] = None,
) -> SessionController:
    """Create a session with its own photo slot, disambiguation state and history, and return its controller."""
    session = Session(
        photos=PhotoCoordinator(capture, wait_timeout_s=cfg.photo_wait_s),
        disambiguation=DisambiguationState(ttl_s=cfg.disambiguation_ttl_s),
        history=ConversationHistory(cfg.history_max_turns, cfg.history_max_age_s),
        user_id=user_id,
        settings=settings or UserSettings(),
    )
    controller = SessionController(
        session,
        pipeline_factory(session),
        sink,
        cfg,
        follow_up=follow_up,
        recorder=recorder,
    )
    session.controller = controller
    logger.info("session created", session_id=session.session_id, user_id=user_id)
    return controller
