from __future__ import annotations

import asyncio
import base64
import io
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog
from PIL import Image

from .timing import race_with_timeout


logger = structlog.get_logger(__name__)

MAX_PHOTO_EDGE = 1024


@dataclass(frozen=True)
class PhotoData:
    data: bytes
    mime_type: str
    captured_at: float

    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{base64.b64encode(self.data).decode('ascii')}"


CaptureFn = Callable[[], Awaitable[PhotoData]]


def decode_photo(data_b64: str, mime_type: str = "", max_edge: int = MAX_PHOTO_EDGE) -> PhotoData:
    """
    Decode a base64 photo from the device, verify it is an image and
    downscale it to a JPEG no larger than max_edge on its longest side.
    """
    try:
        raw = base64.b64decode(data_b64, validate=True)
    except Exception as exc:
        raise ValueError("Photo payload must be base64.") from exc
    if not raw:
        raise ValueError("Photo payload is empty.")

    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except Exception as exc:
        raise ValueError(f"Photo is not a readable image ({mime_type or 'unknown type'}).") from exc

    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    if max(image.size) > max_edge:
        image.thumbnail((max_edge, max_edge))

    out = io.BytesIO()
    image.save(out, format="JPEG", quality=85)
    return PhotoData(data=out.getvalue(), mime_type="image/jpeg", captured_at=time.time())


@dataclass
class _PhotoSlot:
    future: "asyncio.Future[PhotoData]"
    requested_at: float
    photo: Optional[PhotoData] = None


class PhotoCoordinator:
    """
    At most one capture per session. A new request clears the previous photo,
    duplicate requests while a capture is in flight are ignored, and readers can
    either peek (never blocks) or wait up to wait_timeout_s for the in-flight capture.
    """

    def __init__(self, capture: Optional[CaptureFn], wait_timeout_s: float = 3.0) -> None:
        self._capture = capture
        self._wait_timeout_s = wait_timeout_s
        self._slot: Optional[_PhotoSlot] = None

    @property
    def has_camera(self) -> bool:
        return self._capture is not None

    @property
    def requesting(self) -> bool:
        slot = self._slot
        return slot is not None and slot.photo is None and not slot.future.done()

    @property
    def has_photo(self) -> bool:
        return self._slot is not None

    @property
    def requested_at(self) -> Optional[float]:
        return self._slot.requested_at if self._slot is not None else None

    def request_capture(self) -> bool:
        """Start a fresh capture. Returns False when ignored (in flight, or no camera)."""
        if self._capture is None:
            return False
        if self.requesting:
            return False

        self._slot = None
        future = asyncio.ensure_future(self._capture())
        slot = _PhotoSlot(future=future, requested_at=time.time())
        self._slot = slot
        future.add_done_callback(lambda f: self._on_captured(slot, f))
        logger.debug("photo requested")
        return True

    def _on_captured(self, slot: _PhotoSlot, future: "asyncio.Future[PhotoData]") -> None:
        if future.cancelled():
            if self._slot is slot:
                self._slot = None
            return
        exc = future.exception()
        if self._slot is not slot:
            # Cleared or replaced while in flight; the result is stale.
            return
        if exc is not None:
            logger.warning("photo capture failed", error=str(exc))
            self._slot = None
            return
        slot.photo = future.result()
        logger.debug("photo ready", latency_s=round(time.time() - slot.requested_at, 3))

    def cached(self) -> Optional[PhotoData]:
        return self._slot.photo if self._slot is not None else None

    async def get_photo(self, wait: bool = False) -> Optional[PhotoData]:
        slot = self._slot
        if slot is None:
            return None
        if slot.photo is not None:
            return slot.photo
        if not wait:
            return None
        try:
            return await race_with_timeout(
                slot.future, self._wait_timeout_s, None, cancel_on_timeout=False
            )
        except asyncio.CancelledError:
            if slot.future.cancelled():
                return None
            raise
        except Exception:
            return None

    def clear(self) -> None:
        slot = self._slot
        self._slot = None
        if slot is not None and not slot.future.done():
            slot.future.cancel()
