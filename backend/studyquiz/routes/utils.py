"""
Shared route utilities used by the streaming quiz routes.

Centralises dependency lookup on ``app.state`` and the SSE plumbing:
launching the pipeline task and wrapping its emitter in a response.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Coroutine, Set

from fastapi import Request
from fastapi.responses import StreamingResponse

from studyquiz.services.llm_service.llm import ModelInvoker
from studyquiz.services.quiz.store import QuizStore
from studyquiz.services.sse import SSEEmitter

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Module-level task references: running pipelines must not be GC'd
_pipeline_tasks: Set[asyncio.Task] = set()


# ── Dependencies ──────────────────────────────────────────────


def get_quiz_store(request: Request) -> QuizStore:
    return request.app.state.quiz_store


def get_model_invoker(request: Request) -> ModelInvoker:
    return request.app.state.model_invoker


# ── Streaming ─────────────────────────────────────────────────


def launch_pipeline(coro: Coroutine, emitter: SSEEmitter) -> asyncio.Task:
    """Run *coro* as its own task, independent of the HTTP response.

    A client disconnect stops the response, not the task. When the task
    ends the emitter is closed so the response body finishes.
    """
    task = asyncio.create_task(coro, name=f"pipeline:{emitter.name}")
    _pipeline_tasks.add(task)

    def _on_done(t: asyncio.Task) -> None:
        _pipeline_tasks.discard(t)
        emitter.close()
        if t.cancelled():
            logger.warning("Pipeline %s was cancelled", emitter.name)
        elif t.exception() is not None:
            logger.error("Pipeline %s crashed: %r", emitter.name, t.exception())

    task.add_done_callback(_on_done)
    return task


def sse_response(emitter: SSEEmitter) -> StreamingResponse:
    return StreamingResponse(
        emitter.stream(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
