"""Quiz generation: sanitize, prompt, validated structured invocation."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, List, Optional

from studyquiz.core.config import settings
from studyquiz.core.errors import (
    GENERATION_FAILED_MESSAGE,
    AppError,
    ErrorKind,
    StructuredOutputError,
)
from studyquiz.core.sanitize import detect_suspicious_patterns, sanitize_for_prompt
from studyquiz.prompts import build_generation_system_prompt, build_generation_user_message
from studyquiz.prompts.constants import QUESTIONS_BLOCK
from studyquiz.services.llm_service.llm import ModelInvoker
from studyquiz.services.llm_service.llm_schemas import GeneratedQuestion, GenerationRequest, QuizOutput
from studyquiz.services.llm_service.structured_invoker import invoke_with_retry

logger = logging.getLogger(__name__)

OnQuestion = Callable[[GeneratedQuestion], Awaitable[None]]


def _sanitize_request(request: GenerationRequest) -> GenerationRequest:
    subject = sanitize_for_prompt(request.subject)
    goal = sanitize_for_prompt(request.goal)
    materials = sanitize_for_prompt(request.materials_text) if request.materials_text else None

    detect_suspicious_patterns(subject, "subject")
    detect_suspicious_patterns(goal, "goal")
    if materials:
        detect_suspicious_patterns(materials, "materials")

    return request.model_copy(update={
        "subject": subject,
        "goal": goal,
        "materials_text": materials,
    })


async def generate_quiz(
    request: GenerationRequest,
    on_question: Optional[OnQuestion],
    *,
    invoker: ModelInvoker,
) -> List[GeneratedQuestion]:
    """Generate ``request.question_count`` validated questions.

    ``on_question`` is awaited once per question in array order, which is
    also ``questionNumber`` order. The full list is returned for persistence.

    Raises:
        AppError: BAD_REQUEST with a generic message when the model output
            could not be validated, leaked the system marker, or the model
            was unreachable.
    """
    clean = _sanitize_request(request)

    try:
        output = await invoke_with_retry(
            invoker,
            system_prompt=build_generation_system_prompt(),
            user_message=build_generation_user_message(clean),
            block_name=QUESTIONS_BLOCK,
            schema=QuizOutput,
            temperature=settings.LLM_TEMPERATURE_GENERATION,
            context={
                "expected_count": clean.question_count,
                "answer_format": clean.answer_format,
            },
        )
    except StructuredOutputError as exc:
        logger.error(
            "Quiz generation failed: cause=%s block=%s %s",
            exc.cause.value, exc.block_name, exc.detail,
            extra={"failure_cause": exc.cause.value, "block_name": exc.block_name},
        )
        raise AppError(ErrorKind.BAD_REQUEST, GENERATION_FAILED_MESSAGE) from exc

    questions = output.root
    logger.info("Generated %d question(s) difficulty=%s format=%s",
                len(questions), clean.difficulty.value, clean.answer_format.value)

    if on_question is not None:
        for question in questions:
            await on_question(question)
    return list(questions)
