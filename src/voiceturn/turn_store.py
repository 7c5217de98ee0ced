from __future__ import annotations

import asyncio
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .config import Config
from .photo import PhotoData


def _now_ts() -> tuple[str, str]:
    # ISO-ish for metadata and filesystem-safe ID for filenames.
    now = datetime.now().astimezone()
    ts = now.replace(microsecond=0).isoformat()
    fid = now.strftime("%Y-%m-%dT%H-%M-%S-%f")
    return ts, fid


def _write_json(path: Path, payload: dict[str, Any]) -> None:
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


def save_turn(
    turns_dir: Path,
    *,
    session_id: str,
    user_id: str,
    query: str,
    response: str,
    photo: Optional[PhotoData] = None,
) -> dict[str, Any]:
    ts, fid = _now_ts()
    turn_id = f"{fid}_{session_id}"

    photo_name: Optional[str] = None
    if photo is not None:
        photo_name = f"{turn_id}.jpg"
        (turns_dir / photo_name).write_bytes(photo.data)

    meta = {
        "id": turn_id,
        "ts": ts,
        "session_id": session_id,
        "user_id": user_id,
        "query": query,
        "response": response,
        "photo": photo_name,
        "photo_ts": photo.captured_at if photo is not None else None,
    }
    _write_json(turns_dir / f"{turn_id}.json", meta)
    return meta


def list_turns(turns_dir: Path, limit: int = 200) -> list[dict[str, Any]]:
    paths = sorted(turns_dir.glob("*.json"), key=lambda p: p.name, reverse=True)
    out: list[dict[str, Any]] = []
    for p in paths[:limit]:
        try:
            out.append(json.loads(p.read_text(encoding="utf-8")))
        except (OSError, ValueError):
            continue
    return out


class TurnStore:
    """Persist completed turns as JSON (plus the JPEG, when a photo was used)."""

    def __init__(self, cfg: Config, session_id: str, user_id: str) -> None:
        self.turns_dir = cfg.turns_dir
        self.session_id = session_id
        self.user_id = user_id

    async def record(self, query: str, response: str, photo: Optional[PhotoData]) -> None:
        self.turns_dir.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(
            save_turn,
            self.turns_dir,
            session_id=self.session_id,
            user_id=self.user_id,
            query=query,
            response=response,
            photo=photo,
        )
