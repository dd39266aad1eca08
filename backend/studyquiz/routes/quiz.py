"""Quiz routes: generation and grading streams, resume, auto-save and results.

Streaming endpoints run in three phases:
1. ``prepare_*`` checks; failures are JSON 4xx before any SSE header
2. the SSE response opens and the executor starts as its own task
3. the response drains the emitter; in-band ``error`` events only
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from studyquiz.core.config import settings
from studyquiz.services.auth import CurrentUser, get_current_user
from studyquiz.services.llm_service.llm import ModelInvoker
from studyquiz.services.llm_service.llm_schemas import AnswerFormat, Difficulty
from studyquiz.services.quiz import service as quiz_service
from studyquiz.services.quiz.store import QuizStore
from studyquiz.services.sse import SSEEmitter
from .utils import get_model_invoker, get_quiz_store, launch_pipeline, sse_response

logger = logging.getLogger(__name__)
router = APIRouter()


class SubmittedAnswer(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    question_id: str
    answer: str


class SubmitQuizRequest(BaseModel):
    answers: List[SubmittedAnswer] = Field(default_factory=list)


class SaveAnswersRequest(BaseModel):
    answers: List[SubmittedAnswer] = Field(min_length=1)


@router.get("/sessions/{session_id}/quizzes/generate")
async def generate_quiz_stream(
    session_id: str,
    difficulty: Difficulty = Query(...),
    answer_format: AnswerFormat = Query(..., alias="format"),
    count: int = Query(..., ge=settings.MIN_QUESTION_COUNT, le=settings.MAX_QUESTION_COUNT),
    current_user: CurrentUser = Depends(get_current_user),
    store: QuizStore = Depends(get_quiz_store),
    invoker: ModelInvoker = Depends(get_model_invoker),
):
    prepared = await quiz_service.prepare_generation(store, session_id, current_user.id)

    params = quiz_service.GenerationParams(
        prepared=prepared,
        difficulty=difficulty,
        answer_format=answer_format,
        question_count=count,
    )
    emitter = SSEEmitter(name=f"generate:{session_id}")
    launch_pipeline(quiz_service.execute_generation(params, emitter, store, invoker), emitter)
    logger.info("Quiz generation stream opened session=%s user=%s count=%d",
                session_id, current_user.id, count)
    return sse_response(emitter)


@router.post("/quizzes/{quiz_id}/submit")
async def submit_quiz_stream(
    quiz_id: str,
    request: SubmitQuizRequest,
    current_user: CurrentUser = Depends(get_current_user),
    store: QuizStore = Depends(get_quiz_store),
    invoker: ModelInvoker = Depends(get_model_invoker),
):
    answers = {a.question_id: a.answer for a in request.answers}
    context = await quiz_service.prepare_grading(store, quiz_id, current_user.id, answers)

    emitter = SSEEmitter(name=f"grade:{quiz_id}")
    launch_pipeline(quiz_service.execute_grading(context, emitter, store, invoker), emitter)
    logger.info("Quiz grading stream opened quiz=%s answers=%d", quiz_id, len(answers))
    return sse_response(emitter)


@router.post("/quizzes/{quiz_id}/regrade")
async def regrade_quiz_stream(
    quiz_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    store: QuizStore = Depends(get_quiz_store),
    invoker: ModelInvoker = Depends(get_model_invoker),
):
    context = await quiz_service.prepare_regrade(store, quiz_id, current_user.id)

    emitter = SSEEmitter(name=f"regrade:{quiz_id}")
    launch_pipeline(quiz_service.execute_grading(context, emitter, store, invoker), emitter)
    logger.info("Quiz regrade stream opened quiz=%s", quiz_id)
    return sse_response(emitter)


@router.get("/quizzes/{quiz_id}/results")
async def get_quiz_results(
    quiz_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    store: QuizStore = Depends(get_quiz_store),
):
    return await quiz_service.get_results(store, quiz_id, current_user.id)


@router.get("/quizzes/{quiz_id}")
async def get_quiz(
    quiz_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    store: QuizStore = Depends(get_quiz_store),
):
    """Resume a quiz: persisted questions and saved answers, nothing revealed."""
    return await quiz_service.get_quiz(store, quiz_id, current_user.id)


@router.patch("/quizzes/{quiz_id}/answers")
async def save_quiz_answers(
    quiz_id: str,
    request: SaveAnswersRequest,
    current_user: CurrentUser = Depends(get_current_user),
    store: QuizStore = Depends(get_quiz_store),
):
    answers = {a.question_id: a.answer for a in request.answers}
    return await quiz_service.save_answers(store, quiz_id, current_user.id, answers)
