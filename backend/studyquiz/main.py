"""Study Quiz API: app factory wiring, middleware and error mapping."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Dict, Optional

from studyquiz.core.config import settings
from studyquiz.core.log_config import configure_logging

# Configured before the app modules below are imported
configure_logging(settings.LOG_DIR, debug=settings.DEBUG)

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from studyquiz.core.errors import STATUS_BY_KIND, AppError, ErrorKind
from studyquiz.routes.health import router as health_router
from studyquiz.routes.quiz import router as quiz_router
from studyquiz.services.llm_service.llm import ModelInvoker
from studyquiz.services.quiz.store import InMemoryQuizStore

logger = logging.getLogger("studyquiz")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Explicitly constructed collaborators; routes reach them through Depends
    app.state.quiz_store = InMemoryQuizStore()
    app.state.model_invoker = ModelInvoker()
    logger.info("Study Quiz API up: provider=%s env=%s", settings.LLM_PROVIDER, settings.ENVIRONMENT)
    yield
    logger.info("Study Quiz API stopping")


app = FastAPI(lifespan=lifespan, title="Study Quiz API", version="1.0.0")


# ── Request logging ───────────────────────────────────────────


@app.middleware("http")
async def request_log_middleware(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.request_id = rid
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            "[%s] %s %s failed after %.2fs: %s",
            rid, request.method, request.url.path, time.perf_counter() - started, type(exc).__name__,
        )
        raise
    logger.info(
        "[%s] %s %s -> %d in %.2fs",
        rid, request.method, request.url.path, response.status_code, time.perf_counter() - started,
    )
    response.headers["X-Request-ID"] = rid
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


# ── Error responses ───────────────────────────────────────────
# Handler responses bypass CORSMiddleware; add the headers here.


def _error_cors_headers(request: Request) -> Dict[str, str]:
    origin: Optional[str] = request.headers.get("origin")
    if origin not in settings.CORS_ORIGINS:
        origin = settings.CORS_ORIGINS[0] if settings.CORS_ORIGINS else "*"
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "*",
        "Access-Control-Allow-Headers": "*",
    }


def _error_response(request: Request, status: int, body: dict, extra_headers=None) -> JSONResponse:
    headers = _error_cors_headers(request)
    if extra_headers:
        headers.update(extra_headers)
    return JSONResponse(status_code=status, content=body, headers=headers)


@app.exception_handler(AppError)
async def on_app_error(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    return _error_response(request, exc.status_code, exc.to_dict())


@app.exception_handler(RequestValidationError)
async def on_validation_error(request: Request, exc: RequestValidationError):
    fields = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    kind = ErrorKind.VALIDATION_ERROR
    return _error_response(
        request,
        STATUS_BY_KIND[kind],
        {"detail": "Validation failed", "code": kind.value, "details": fields},
    )


@app.exception_handler(HTTPException)
async def on_http_exception(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, {"detail": exc.detail}, exc.headers)


@app.exception_handler(Exception)
async def on_unhandled(request: Request, exc: Exception):
    rid = getattr(request.state, "request_id", "unknown")
    logger.exception("[%s] unhandled %s", rid, type(exc).__name__)
    kind = ErrorKind.INTERNAL_ERROR
    return _error_response(
        request,
        STATUS_BY_KIND[kind],
        {"detail": "Internal server error", "code": kind.value, "request_id": rid},
    )


app.include_router(health_router, tags=["health"])
app.include_router(quiz_router, tags=["quiz"])
