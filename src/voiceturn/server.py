from __future__ import annotations

import asyncio
import json
import os
import uuid
from typing import Any, Optional, Sequence

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from .collaborators import AppInfo
from .config import Config, load_config
from .controller import build_session
from .deciders import FollowUpDecider, MemoryDecider, ToolDecider, VisionDecider
from .disambiguation import DisambiguationDetector
from .llm import Collaborators, build_collaborators
from .logs import configure_logging
from .photo import PhotoData, decode_photo
from .pipeline import QueryDispatchPipeline
from .session import Session, TranscriptionEvent, UserSettings
from .stt_whisper import SpeechToText, slice_last_seconds
from .tts import speak_async
from .turn_store import TurnStore, list_turns
from .ws_protocol import ack, answer, app_action, dumps, error, photo_request, status, transcript


logger = structlog.get_logger(__name__)

CAPTURE_TIMEOUT_S = 10.0


def _set_privacy_env_defaults(cfg: Config) -> None:
    os.environ.setdefault("HF_HUB_DISABLE_TELEMETRY", "1")
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    os.environ.setdefault("HF_HOME", str(cfg.hf_home))


class WsChannel:
    """Serialized JSON sends; several session tasks may write at once."""

    def __init__(self, ws: WebSocket) -> None:
        self.ws = ws
        self._lock = asyncio.Lock()
        self.closed = False

    async def send(self, payload: dict[str, Any]) -> None:
        if self.closed:
            return
        async with self._lock:
            await self.ws.send_text(dumps(payload))


class WebSocketSink:
    def __init__(self, channel: WsChannel, cfg: Config) -> None:
        self.channel = channel
        self.cfg = cfg

    async def show_status(self, phase: str, detail: str = "") -> None:
        await self.channel.send(status(phase, detail))

    async def deliver_answer(self, text: str, needs_visual_context: bool = False) -> None:
        await self.channel.send(answer(text, needs_visual_context))
        speak_async(text, self.cfg.tts_enabled)

    async def acknowledge(self, kind: str) -> None:
        await self.channel.send(ack(kind))


class DeviceCamera:
    """Photo capture by round trip: send photo_request, wait for the matching photo message."""

    def __init__(self, channel: WsChannel, timeout_s: float = CAPTURE_TIMEOUT_S) -> None:
        self.channel = channel
        self.timeout_s = timeout_s
        self._pending: dict[str, asyncio.Future[PhotoData]] = {}

    async def capture(self) -> PhotoData:
        request_id = uuid.uuid4().hex[:12]
        fut: asyncio.Future[PhotoData] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = fut
        try:
            await self.channel.send(photo_request(request_id))
            return await asyncio.wait_for(fut, self.timeout_s)
        finally:
            self._pending.pop(request_id, None)

    def resolve(self, request_id: str, photo: PhotoData) -> bool:
        fut = self._pending.get(request_id)
        if fut is None or fut.done():
            return False
        fut.set_result(photo)
        return True

    def fail(self, request_id: str, message: str) -> bool:
        fut = self._pending.get(request_id)
        if fut is None or fut.done():
            return False
        fut.set_exception(RuntimeError(message or "Photo capture failed."))
        return True

    def close(self) -> None:
        for fut in self._pending.values():
            if not fut.done():
                fut.cancel()
        self._pending.clear()


class DeviceAppCatalog:
    """Apps reported by the device in its hello message; actions are forwarded to the device."""

    def __init__(self, channel: WsChannel) -> None:
        self.channel = channel
        self.apps: list[AppInfo] = []

    def update(self, raw_apps: Sequence[Any]) -> None:
        apps: list[AppInfo] = []
        for item in raw_apps or []:
            if not isinstance(item, dict):
                continue
            name = str(item.get("name") or "").strip()
            identifier = str(item.get("identifier") or item.get("package_name") or "").strip()
            if not name or not identifier:
                continue
            apps.append(
                AppInfo(
                    name=name,
                    identifier=identifier,
                    description=item.get("description"),
                    running=bool(item.get("running", False)),
                )
            )
        self.apps = apps

    async def list_apps(self) -> Sequence[AppInfo]:
        return list(self.apps)

    async def perform(self, action: str, app: AppInfo) -> str:
        await self.channel.send(app_action(uuid.uuid4().hex[:12], action, app.identifier, app.name))
        verb = "Stopping" if action == "stop" else "Starting"
        return f"{verb} {app.name}."


def _pipeline_factory(collab: Collaborators, catalog: DeviceAppCatalog, cfg: Config):
    def _build(session: Session) -> QueryDispatchPipeline:
        timeout = cfg.classifier_timeout_s
        return QueryDispatchPipeline(
            collab.responder,
            session.photos,
            session.disambiguation,
            session.history,
            detector=DisambiguationDetector(collab.extractor, catalog, timeout),
            memory=MemoryDecider(collab.memory, timeout),
            tools=ToolDecider(collab.tool, timeout),
            vision=VisionDecider(collab.vision, timeout),
            catalog=catalog,
        )

    return _build


def create_app(cfg: Config, collaborators: Optional[Collaborators] = None) -> FastAPI:
    app = FastAPI(title="voiceturn", docs_url=None, redoc_url=None)
    collab = collaborators or build_collaborators(cfg)

    @app.get("/api/turns")
    async def api_turns() -> JSONResponse:
        return JSONResponse({"items": list_turns(cfg.turns_dir)})

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket) -> None:
        await handle_ws(cfg, collab, ws)

    return app


async def handle_ws(cfg: Config, collab: Collaborators, ws: WebSocket) -> None:
    await ws.accept()

    channel = WsChannel(ws)
    camera = DeviceCamera(channel)
    catalog = DeviceAppCatalog(channel)
    sink = WebSocketSink(channel, cfg)
    controller = build_session(
        cfg,
        sink,
        _pipeline_factory(collab, catalog, cfg),
        capture=camera.capture,
        follow_up=FollowUpDecider(collab.affirmative, cfg.classifier_timeout_s),
    )
    session = controller.session
    recorder = TurnStore(cfg, session.session_id, session.user_id)
    controller.recorder = recorder

    stt: Optional[SpeechToText] = None
    audio = bytearray()
    sample_rate = 16000
    recording = False
    transcription_lock = asyncio.Lock()
    partial_task: Optional[asyncio.Task[None]] = None

    def get_stt() -> SpeechToText:
        nonlocal stt
        if stt is None:
            stt = SpeechToText(cfg)
        return stt

    async def start_partial_loop() -> None:
        nonlocal partial_task

        async def _loop() -> None:
            last_sent = ""
            while recording:
                await asyncio.sleep(cfg.stt_partial_interval_s)
                if not recording:
                    break
                if transcription_lock.locked():
                    continue
                pcm = slice_last_seconds(audio, sample_rate, cfg.stt_partial_window_s)
                if len(pcm) < 32000:  # < 1s at 16k
                    continue
                try:
                    async with transcription_lock:
                        res = await asyncio.to_thread(get_stt().transcribe_partial, pcm)
                except Exception as exc:
                    # Partial is best-effort; never kill the session.
                    logger.warning("partial transcription failed", error=str(exc))
                    continue
                if res.text and res.text != last_sent:
                    last_sent = res.text
                    await channel.send(transcript(res.text, False))
                    controller.handle_event(res.to_event())

        partial_task = asyncio.create_task(_loop())

    async def stop_partial_loop() -> None:
        nonlocal partial_task
        if partial_task is None:
            return
        # Don't cancel mid-transcribe (thread can't be interrupted). Let it exit naturally.
        try:
            await asyncio.wait_for(partial_task, timeout=2.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            partial_task.cancel()
        partial_task = None

    async def on_photo(data: dict[str, Any]) -> None:
        request_id = str(data.get("request_id") or "")
        try:
            photo = await asyncio.to_thread(
                decode_photo, str(data.get("data_b64") or ""), str(data.get("mime_type") or "")
            )
        except ValueError as exc:
            camera.fail(request_id, str(exc))
            await channel.send(error("Invalid photo.", str(exc)))
            return
        if not camera.resolve(request_id, photo):
            logger.debug("late photo ignored", request_id=request_id)

    await channel.send(status("idle", ""))

    try:
        while True:
            msg = await ws.receive()
            if msg.get("type") == "websocket.disconnect":
                break

            if "bytes" in msg and msg["bytes"] is not None:
                if recording:
                    audio.extend(msg["bytes"])
                continue

            text = msg.get("text")
            if not text:
                continue
            try:
                data = json.loads(text)
            except ValueError:
                await channel.send(error("Invalid JSON message."))
                continue
            if not isinstance(data, dict):
                await channel.send(error("Invalid message."))
                continue

            mtype = data.get("type")

            if mtype == "hello":
                session.user_id = str(data.get("user_id") or session.user_id)
                session.settings = UserSettings.from_mapping(data.get("settings"))
                recorder.user_id = session.user_id
                catalog.update(data.get("apps") or [])
                logger.info(
                    "device hello",
                    session_id=session.session_id,
                    user_id=session.user_id,
                    apps=len(catalog.apps),
                )
                continue

            if mtype == "transcription":
                controller.handle_event(
                    TranscriptionEvent(
                        speaker_id=str(data.get("speaker_id") or "unknown"),
                        text=str(data.get("text") or ""),
                        is_final=bool(data.get("is_final", False)),
                    )
                )
                continue

            if mtype == "head_position":
                controller.handle_head_position(str(data.get("position") or ""))
                continue

            if mtype == "photo":
                await on_photo(data)
                continue

            if mtype == "photo_error":
                camera.fail(str(data.get("request_id") or ""), str(data.get("message") or ""))
                continue

            if mtype == "audio_start":
                audio = bytearray()
                sample_rate = int(data.get("sample_rate") or 16000)
                recording = True
                await start_partial_loop()
                continue

            if mtype == "audio_stop":
                if not recording:
                    continue
                recording = False
                await stop_partial_loop()

                pcm = bytes(audio)
                audio = bytearray()
                try:
                    async with transcription_lock:
                        res = await asyncio.to_thread(get_stt().transcribe_final, pcm)
                except Exception as exc:
                    await channel.send(error("Transcription failed.", str(exc)))
                    continue

                await channel.send(transcript(res.text, True))
                controller.handle_event(res.to_event())
                continue

            await channel.send(error("Unknown message type.", str(mtype)))

    except WebSocketDisconnect:
        pass
    finally:
        channel.closed = True
        recording = False
        await stop_partial_loop()
        camera.close()
        session.close()


def main() -> None:
    load_dotenv()
    cfg = load_config()
    configure_logging(cfg.log_level)
    _set_privacy_env_defaults(cfg)

    import uvicorn

    app = create_app(cfg)
    uvicorn.run(app, host=cfg.host, port=cfg.port, log_level=cfg.log_level)


if __name__ == "__main__":
    main()
