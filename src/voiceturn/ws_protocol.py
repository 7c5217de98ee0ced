from __future__ import annotations

import json
from typing import Any


def dumps(msg: dict[str, Any]) -> str:
    return json.dumps(msg, separators=(",", ":"), ensure_ascii=False)


def status(phase: str, detail: str = "") -> dict[str, Any]:
    return {"type": "status", "phase": phase, "detail": detail}


def error(message: str, detail: str = "") -> dict[str, Any]:
    return {"type": "error", "message": message, "detail": detail}


def answer(text: str, needs_visual_context: bool = False) -> dict[str, Any]:
    return {"type": "answer", "text": text, "needs_visual_context": needs_visual_context}


def ack(kind: str) -> dict[str, Any]:
    return {"type": "ack", "kind": kind}


def photo_request(request_id: str) -> dict[str, Any]:
    return {"type": "photo_request", "request_id": request_id}


def app_action(request_id: str, action: str, identifier: str, name: str) -> dict[str, Any]:
    return {
        "type": "app_action",
        "request_id": request_id,
        "action": action,
        "identifier": identifier,
        "name": name,
    }


def transcript(text: str, is_final: bool) -> dict[str, Any]:
    return {"type": "transcript_final" if is_final else "transcript_partial", "text": text}
