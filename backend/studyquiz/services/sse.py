"""Server-sent event emitter for the quiz generation/grading streams.

Wire format per event: ``data: <single-line JSON>\\n\\n``. No ``event:``,
``id:`` or ``retry:`` fields.

The pipeline task writes through ``emit`` (never blocks, never raises);
the HTTP response drains ``stream()``. After a terminal event or a client
disconnect the emitter is a no-op sink.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})

_END = None  # queue sentinel


def format_sse_event(event: Mapping[str, Any]) -> str:
    """Serialize one stream event as an SSE frame."""
    return f"data: {json.dumps(event, separators=(',', ':'), ensure_ascii=False)}\n\n"


class SSEEmitter:
    """Queue-backed SSE sink for one logical stream."""

    def __init__(self, name: str = "stream"):
        self.name = name
        self._queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._connected = True
        self._finished = False
        self._deadline: Optional[asyncio.TimerHandle] = None
        self.events_emitted = 0

    # ── State ─────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def is_open(self) -> bool:
        return self._connected and not self._finished

    # ── Producer side ─────────────────────────────────────

    def emit(self, event: Dict[str, Any]) -> bool:
        """Queue *event* for the client. Returns False when it was dropped."""
        if not self.is_open:
            return False

        self._queue.put_nowait(format_sse_event(event))
        self.events_emitted += 1

        if event.get("type") in TERMINAL_EVENT_TYPES:
            self._finish()
        return True

    def progress(self, message: str) -> bool:
        return self.emit({"type": "progress", "message": message})

    def question(self, data: Dict[str, Any]) -> bool:
        return self.emit({"type": "question", "data": data})

    def graded(self, data: Dict[str, Any]) -> bool:
        return self.emit({"type": "graded", "data": data})

    def complete(self, data: Dict[str, Any]) -> bool:
        return self.emit({"type": "complete", "data": data})

    def error(self, message: str) -> bool:
        return self.emit({"type": "error", "message": message})

    def set_deadline(self, seconds: float, message: str) -> None:
        """Emit ``error`` *message* if no terminal event arrives in time.

        Only the stream ends; the producing task keeps running.
        """
        loop = asyncio.get_running_loop()
        self._deadline = loop.call_later(seconds, self._on_deadline, message)

    def _on_deadline(self, message: str) -> None:
        self._deadline = None
        if self.is_open:
            logger.warning("SSE %s hit its deadline; ending stream", self.name)
            self.error(message)

    def close(self) -> None:
        """End the stream without a terminal event (producer finished)."""
        if not self._finished:
            self._finish()

    def _finish(self) -> None:
        self._finished = True
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        self._queue.put_nowait(_END)

    # ── Consumer side ─────────────────────────────────────

    def mark_disconnected(self) -> None:
        """Client went away: drop every later write."""
        if not self._connected:
            return
        self._connected = False
        if self._deadline is not None:
            self._deadline.cancel()
            self._deadline = None
        logger.info("SSE %s client disconnected after %d event(s)", self.name, self.events_emitted)

    async def stream(self) -> AsyncIterator[str]:
        """Yield queued frames until the stream ends or the client leaves."""
        try:
            while True:
                frame = await self._queue.get()
                if frame is _END:
                    return
                yield frame
        finally:
            if not self._finished:
                self.mark_disconnected()
