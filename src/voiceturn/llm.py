"""OpenAI-backed classifier, candidate extractor and responder."""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

import structlog
from openai import AsyncOpenAI

from .collaborators import Classifier, CandidateExtractor, Responder, ResponderRequest, ResponderResult
from .config import Config
from .prompts import (
    affirmative_instructions,
    assistant_system_prompt,
    classifier_user_prompt,
    disambiguation_instructions,
    memory_instructions,
    tool_instructions,
    vision_instructions,
)


logger = structlog.get_logger(__name__)

ANSWER_FUNCTION = "deliver_answer"
CHOICES_FUNCTION = "report_choices"

OFFLINE_ANSWER = "Sorry, I can't reach the assistant service right now."


@dataclass(frozen=True)
class ClassifierTask:
    name: str
    labels: tuple[str, ...]
    instructions: str

    @property
    def function_name(self) -> str:
        return f"classify_{self.name}"

    def function_definition(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "name": self.function_name,
            "description": "Return the single label that best fits the query.",
            "parameters": {
                "type": "object",
                "properties": {"label": {"type": "string", "enum": list(self.labels)}},
                "required": ["label"],
                "additionalProperties": False,
            },
            "strict": True,
        }


MEMORY_TASK = ClassifierTask("memory", ("recall", "retry", "continue"), memory_instructions())
TOOL_TASK = ClassifierTask("tool", ("tool", "no_tool"), tool_instructions())
VISION_TASK = ClassifierTask("vision", ("yes", "no", "unsure"), vision_instructions())
AFFIRMATIVE_TASK = ClassifierTask("affirmative", ("yes", "no"), affirmative_instructions())

ANSWER_DEFINITION: Dict[str, Any] = {
    "type": "function",
    "name": ANSWER_FUNCTION,
    "description": "Deliver the final spoken answer to the user.",
    "parameters": {
        "type": "object",
        "properties": {
            "answer": {"type": "string"},
            "needs_visual_context": {"type": "boolean"},
        },
        "required": ["answer", "needs_visual_context"],
        "additionalProperties": False,
    },
    "strict": True,
}

CHOICES_DEFINITION: Dict[str, Any] = {
    "type": "function",
    "name": CHOICES_FUNCTION,
    "description": "Report whether the answer asks the user to pick an option, and the option names.",
    "parameters": {
        "type": "object",
        "properties": {
            "is_choice": {"type": "boolean"},
            "candidates": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["is_choice", "candidates"],
        "additionalProperties": False,
    },
    "strict": True,
}


def parse_tool_output(response: Any, tool_name: str) -> Optional[Dict[str, Any]]:
    """Return the parsed arguments of the named function call, or None if the model did not call it."""
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", None) != "function_call":
            continue
        if getattr(item, "name", None) != tool_name:
            continue
        return json.loads(getattr(item, "arguments", "{}") or "{}")
    return None


def _message(role: str, text: str) -> Dict[str, Any]:
    kind = "output_text" if role == "assistant" else "input_text"
    return {"type": "message", "role": role, "content": [{"type": kind, "text": text}]}


class OpenAIClassifier:
    """Single-label classification through a forced function call."""

    def __init__(self, client: AsyncOpenAI, task: ClassifierTask, model: str) -> None:
        if client is None:
            raise ValueError("AsyncOpenAI client is required.")
        self.client = client
        self.task = task
        self.model = model

    async def classify(self, text: str, context: Mapping[str, Any]) -> str:
        prompt = classifier_user_prompt(
            self.task.instructions, text, {k: str(v) for k, v in context.items()}
        )
        start = time.time()
        response = await self.client.responses.create(
            model=self.model,
            input=[_message("user", prompt)],
            tools=[self.task.function_definition()],
            tool_choice={"type": "function", "name": self.task.function_name},
        )
        args = parse_tool_output(response, self.task.function_name)
        if args is None:
            raise RuntimeError(f"No function_call output for '{self.task.function_name}' found in response.")
        label = str(args.get("label", ""))
        logger.debug("classified", task=self.task.name, label=label, latency_s=round(time.time() - start, 3))
        return label


class OpenAICandidateExtractor:
    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self.client = client
        self.model = model

    async def extract_candidates(self, answer: str) -> Sequence[str]:
        response = await self.client.responses.create(
            model=self.model,
            input=[
                _message("system", disambiguation_instructions()),
                _message("user", f'Assistant answer: "{answer}"'),
            ],
            tools=[CHOICES_DEFINITION],
            tool_choice={"type": "function", "name": CHOICES_FUNCTION},
        )
        args = parse_tool_output(response, CHOICES_FUNCTION) or {}
        if not args.get("is_choice"):
            return []
        return [str(c) for c in args.get("candidates") or []]


class OpenAIResponder:
    """
    Answers come back through the deliver_answer function call so the
    visual-context flag is a typed field rather than text in the answer.
    Outside minimal-tools mode hosted web search is offered as well.
    """

    def __init__(self, client: AsyncOpenAI, model: str, vision_model: str) -> None:
        self.client = client
        self.model = model
        self.vision_model = vision_model

    async def respond(self, request: ResponderRequest) -> ResponderResult:
        inputs = [_message("system", assistant_system_prompt(request.mode))]
        for msg in request.history:
            inputs.append(_message(msg.get("role", "user"), msg.get("content", "")))

        content: list[Dict[str, Any]] = [{"type": "input_text", "text": request.query}]
        if request.photo is not None:
            content.append({"type": "input_image", "image_url": request.photo.data_url()})
        inputs.append({"type": "message", "role": "user", "content": content})

        tools: list[Dict[str, Any]] = [ANSWER_DEFINITION]
        if request.use_minimal_tools:
            tool_choice: Any = {"type": "function", "name": ANSWER_FUNCTION}
        else:
            tools.append({"type": "web_search_preview"})
            tool_choice = "required"

        start = time.time()
        response = await self.client.responses.create(
            model=self.vision_model if request.photo is not None else self.model,
            input=inputs,
            tools=tools,
            tool_choice=tool_choice,
        )
        logger.debug("responder answered", mode=request.mode, latency_s=round(time.time() - start, 3))

        args = parse_tool_output(response, ANSWER_FUNCTION)
        if args is not None:
            return ResponderResult(
                answer=str(args.get("answer", "")),
                needs_visual_context=bool(args.get("needs_visual_context", False)),
            )
        return ResponderResult(answer=getattr(response, "output_text", "") or "")


class OfflineResponder:
    """Used when no API key is configured; every query gets the same apology."""

    async def respond(self, request: ResponderRequest) -> ResponderResult:
        logger.warning("responder offline", query=request.query)
        return ResponderResult(answer=OFFLINE_ANSWER)


@dataclass(frozen=True)
class Collaborators:
    responder: Responder
    memory: Optional[Classifier] = None
    tool: Optional[Classifier] = None
    vision: Optional[Classifier] = None
    affirmative: Optional[Classifier] = None
    extractor: Optional[CandidateExtractor] = None


def build_collaborators(cfg: Config) -> Collaborators:
    """OpenAI collaborators when OPENAI_API_KEY is set, keyword-only routing otherwise."""
    if not os.getenv("OPENAI_API_KEY", "").strip():
        logger.warning("OPENAI_API_KEY not set, running with keyword routing only")
        return Collaborators(responder=OfflineResponder())

    client = AsyncOpenAI()
    return Collaborators(
        responder=OpenAIResponder(client, cfg.responder_model, cfg.vision_model),
        memory=OpenAIClassifier(client, MEMORY_TASK, cfg.classifier_model),
        tool=OpenAIClassifier(client, TOOL_TASK, cfg.classifier_model),
        vision=OpenAIClassifier(client, VISION_TASK, cfg.classifier_model),
        affirmative=OpenAIClassifier(client, AFFIRMATIVE_TASK, cfg.classifier_model),
        extractor=OpenAICandidateExtractor(client, cfg.classifier_model),
    )
