import asyncio
import json
from pathlib import Path

from fakes import make_cfg, make_photo
from voiceturn.turn_store import TurnStore, list_turns, save_turn


def test_save_turn_and_list(tmp_path: Path):
    cfg = make_cfg(tmp_path)
    meta = save_turn(
        cfg.turns_dir,
        session_id="abc",
        user_id="user@example.com",
        query="what is this",
        response="A fern.",
        photo=make_photo(b"\xff\xd8jpeg"),
    )
    assert (cfg.turns_dir / f"{meta['id']}.json").exists()
    assert (cfg.turns_dir / meta["photo"]).read_bytes() == b"\xff\xd8jpeg"
    assert meta["photo_ts"] is not None

    items = list_turns(cfg.turns_dir)
    assert items
    assert items[0]["id"] == meta["id"]
    assert items[0]["query"] == "what is this"


def test_text_only_turn_has_no_photo(tmp_path: Path):
    cfg = make_cfg(tmp_path)
    meta = save_turn(cfg.turns_dir, session_id="s", user_id="u", query="q", response="r")
    assert meta["photo"] is None
    assert list(cfg.turns_dir.glob("*.jpg")) == []


def test_list_turns_skips_unreadable_files(tmp_path: Path):
    cfg = make_cfg(tmp_path)
    (cfg.turns_dir / "broken.json").write_text("{not json", encoding="utf-8")
    save_turn(cfg.turns_dir, session_id="s", user_id="u", query="q", response="r")
    items = list_turns(cfg.turns_dir)
    assert len(items) == 1


def test_turn_store_records_asynchronously(tmp_path: Path):
    cfg = make_cfg(tmp_path)
    store = TurnStore(cfg, "sess", "user")
    asyncio.run(store.record("what time is it", "Noon.", None))
    files = list(cfg.turns_dir.glob("*.json"))
    assert len(files) == 1
    payload = json.loads(files[0].read_text(encoding="utf-8"))
    assert payload["session_id"] == "sess"
    assert payload["response"] == "Noon."
