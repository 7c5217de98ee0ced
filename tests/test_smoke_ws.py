import base64
import io
from pathlib import Path

from fastapi.testclient import TestClient
from PIL import Image

from fakes import FakeResponder, make_cfg
from voiceturn.llm import Collaborators
from voiceturn.server import create_app


CHOICE_ANSWER = "I found multiple apps. Which one would you like: 'Mentra Stream' or 'Mentra Stream [DEV]'?"

HELLO = {
    "type": "hello",
    "user_id": "tester",
    "settings": {"follow_up_enabled": False},
    "apps": [
        {"name": "Mentra Stream", "identifier": "com.mentra.stream"},
        {"name": "Mentra Stream [DEV]", "identifier": "com.mentra.stream.dev"},
    ],
}


def _png_b64() -> str:
    buf = io.BytesIO()
    Image.new("RGB", (32, 32), color=(10, 200, 30)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def _receive_until(ws, mtype: str, limit: int = 100) -> tuple[dict, list[dict]]:
    seen: list[dict] = []
    for _ in range(limit):
        msg = ws.receive_json()
        seen.append(msg)
        if msg.get("type") == "error":
            raise AssertionError(msg)
        if msg.get("type") == "photo_request":
            ws.send_json(
                {
                    "type": "photo",
                    "request_id": msg["request_id"],
                    "mime_type": "image/png",
                    "data_b64": _png_b64(),
                }
            )
            continue
        if msg.get("type") == mtype:
            return msg, seen
    raise AssertionError(f"did not receive {mtype}")


def test_smoke_ws_answers_query(tmp_path: Path) -> None:
    cfg = make_cfg(tmp_path)
    responder = FakeResponder()
    client = TestClient(create_app(cfg, Collaborators(responder=responder)))

    with client.websocket_connect("/ws") as ws:
        ws.send_json(HELLO)
        ws.send_json({"type": "transcription", "speaker_id": "A", "text": "hey mentra what time is it", "is_final": True})

        answer, seen = _receive_until(ws, "answer")
        assert answer["text"] == "answer: what time is it"
        assert answer["needs_visual_context"] is False
        assert any(m.get("type") == "status" and m.get("phase") == "processing" for m in seen)

    assert responder.requests[0].query == "what time is it"


def test_smoke_ws_disambiguation_runs_app_action(tmp_path: Path) -> None:
    cfg = make_cfg(tmp_path)
    client = TestClient(create_app(cfg, Collaborators(responder=FakeResponder(CHOICE_ANSWER))))

    with client.websocket_connect("/ws") as ws:
        ws.send_json(HELLO)
        ws.send_json({"type": "transcription", "speaker_id": "A", "text": "hey mentra open the stream app", "is_final": True})
        first, _ = _receive_until(ws, "answer")
        assert first["text"] == CHOICE_ANSWER

        ws.send_json({"type": "transcription", "speaker_id": "A", "text": "hey mentra the first one", "is_final": True})
        action, _ = _receive_until(ws, "app_action")
        assert action["action"] == "start"
        assert action["identifier"] == "com.mentra.stream"

        second, _ = _receive_until(ws, "answer")
        assert second["text"] == "Starting Mentra Stream."


def test_smoke_ws_rejects_bad_messages(tmp_path: Path) -> None:
    cfg = make_cfg(tmp_path)
    client = TestClient(create_app(cfg, Collaborators(responder=FakeResponder())))

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"type": "status", "phase": "idle", "detail": ""}

        ws.send_text("{not json")
        msg = ws.receive_json()
        assert msg["type"] == "error"
        assert msg["message"] == "Invalid JSON message."

        ws.send_json({"type": "teleport"})
        msg = ws.receive_json()
        assert msg["type"] == "error"
        assert msg["detail"] == "teleport"
