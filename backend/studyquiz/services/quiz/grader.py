"""Batch grading of free-text answers with discrete score buckets."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from studyquiz.core.config import settings
from studyquiz.core.errors import (
    GRADING_FAILED_MESSAGE,
    AppError,
    ErrorKind,
    StructuredOutputError,
)
from studyquiz.core.sanitize import detect_suspicious_patterns, sanitize_for_prompt
from studyquiz.prompts import build_grading_system_prompt, build_grading_user_message
from studyquiz.prompts.constants import RESULTS_BLOCK
from studyquiz.services.llm_service.llm import ModelInvoker
from studyquiz.services.llm_service.llm_schemas import (
    GradedAnswer,
    GradedAnswersOutput,
    GradingRequest,
)
from studyquiz.services.llm_service.structured_invoker import invoke_with_retry

logger = logging.getLogger(__name__)

OnGraded = Callable[[GradedAnswer], Awaitable[None]]

ZERO_BELOW = 0.25
HALF_BELOW = 0.75


def clamp_score(raw: float) -> float:
    """Bucket a continuous score in [0, 1] to 0, 0.5 or 1."""
    if raw < ZERO_BELOW:
        return 0
    if raw < HALF_BELOW:
        return 0.5
    return 1


async def grade_answers(
    request: GradingRequest,
    on_graded: Optional[OnGraded],
    *,
    invoker: ModelInvoker,
) -> List[GradedAnswer]:
    """Grade every entry of *request* in one model call.

    Only the subject is sanitized; question text and correct answers are
    server-authored, and submitted answers are XML-escaped by the prompt
    builder so their literal content reaches the grader.

    Raises:
        AppError: BAD_REQUEST with a generic message on any model failure.
    """
    subject = sanitize_for_prompt(request.subject)
    detect_suspicious_patterns(subject, "subject")

    try:
        output = await invoke_with_retry(
            invoker,
            system_prompt=build_grading_system_prompt(),
            user_message=build_grading_user_message(subject, request.entries),
            block_name=RESULTS_BLOCK,
            schema=GradedAnswersOutput,
            temperature=settings.LLM_TEMPERATURE_GRADING,
            context={"expected_numbers": [e.question_number for e in request.entries]},
        )
    except StructuredOutputError as exc:
        logger.error(
            "Grading failed: cause=%s block=%s %s",
            exc.cause.value, exc.block_name, exc.detail,
            extra={"failure_cause": exc.cause.value, "block_name": exc.block_name},
        )
        raise AppError(ErrorKind.BAD_REQUEST, GRADING_FAILED_MESSAGE) from exc

    graded: List[GradedAnswer] = []
    for raw in output.root:
        score = clamp_score(raw.score)
        graded.append(GradedAnswer(
            question_number=raw.question_number,
            score=score,
            is_correct=score == 1,
            feedback=raw.feedback,
        ))

    if on_graded is not None:
        for answer in graded:
            await on_graded(answer)
    return graded
