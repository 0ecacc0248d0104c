"""Trailing debounce for typing indicators."""

import asyncio
import inspect
from typing import Any, Callable, Optional, Set

import structlog

logger = structlog.get_logger()


class TypingIndicator:
    """Turns raw keystrokes into one start signal and one stop signal.

    ``start_typing`` emits a start only when not already signalling and
    always pushes the stop timer back by ``debounce_ms``. The stop signal
    fires when the timer elapses or when ``stop_typing`` is called. Both
    callbacks may be plain functions or coroutine functions; coroutines are
    scheduled on the running loop.
    """

    def __init__(
        self,
        emit_typing_start: Callable[[Optional[str]], Any],
        emit_typing_stop: Callable[[], Any],
        debounce_ms: int = 1000,
    ):
        self._emit_typing_start = emit_typing_start
        self._emit_typing_stop = emit_typing_stop
        self.debounce_ms = debounce_ms
        self._is_typing = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def is_typing(self) -> bool:
        """Whether a start has been signalled without a matching stop."""
        return self._is_typing

    def start_typing(self, location: Optional[str] = None) -> None:
        """Register a keystroke."""
        if not self._is_typing:
            self._is_typing = True
            self._invoke(self._emit_typing_start, location)

        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.debounce_ms / 1000, self._on_timeout)

    def stop_typing(self) -> None:
        """Stop signalling immediately, e.g. on blur or submit."""
        self._cancel_timer()
        if self._is_typing:
            self._is_typing = False
            self._invoke(self._emit_typing_stop)

    def close(self) -> None:
        """Cancel the pending timer without emitting anything."""
        self._cancel_timer()
        self._is_typing = False

    async def drain(self) -> None:
        """Wait for scheduled async callbacks to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _on_timeout(self) -> None:
        self._timer = None
        if self._is_typing:
            self._is_typing = False
            self._invoke(self._emit_typing_stop)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _invoke(self, callback: Callable[..., Any], *args: Any) -> None:
        result = callback(*args)
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
