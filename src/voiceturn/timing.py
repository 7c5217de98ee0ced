from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar


T = TypeVar("T")


async def race_with_timeout(
    aw: Awaitable[T],
    timeout_s: float,
    default: Optional[T] = None,
    *,
    cancel_on_timeout: bool = True,
) -> Optional[T]:
    """
    Race an awaitable against a timer; whichever finishes first wins.

    On timeout the default is returned and the awaitable's eventual result is discarded.
    Pass cancel_on_timeout=False for shared futures (e.g. an in-flight capture)
    that other callers may still want to await later. Exceptions from the
    awaitable propagate to the caller.
    """
    fut = asyncio.ensure_future(aw)
    done, _pending = await asyncio.wait({fut}, timeout=max(0.0, timeout_s))
    if fut in done:
        return fut.result()
    if cancel_on_timeout:
        fut.cancel()
    return default


class Timer:
    """One-shot timer; scheduling again replaces (cancels) the pending callback."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None

    def schedule(self, delay_s: float, callback: Callable[..., Any], *args: Any) -> None:
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay_s), self._fire, callback, args)

    def _fire(self, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        self._handle = None
        callback(*args)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def pending(self) -> bool:
        return self._handle is not None
