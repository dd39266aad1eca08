"""Quiz stream service: pipelines + persistence + SSE.

Each streaming operation runs in two phases:

1. ``prepare_*`` (pre-stream): ownership, status and input checks. Raises
   ``AppError`` so the route answers with a JSON 4xx before any SSE header.
2. ``execute_*`` (streaming): never raises. Every failure becomes an
   ``error`` event on the emitter. Work continues after the client leaves;
   persisted state is re-fetched through ``get_quiz`` while the quiz is
   being taken and ``get_results`` once it is graded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from studyquiz.core.config import settings
from studyquiz.core.errors import (
    GENERATION_FAILED_MESSAGE,
    GRADING_FAILED_MESSAGE,
    AppError,
    ErrorKind,
)
from studyquiz.services.llm_service.llm import ModelInvoker
from studyquiz.services.llm_service.llm_schemas import (
    AnswerFormat,
    Difficulty,
    GeneratedQuestion,
    GradedAnswer,
    GradingEntry,
    GradingRequest,
    GenerationRequest,
    QuestionType,
)
from studyquiz.services.quiz.generator import generate_quiz
from studyquiz.services.quiz.grader import grade_answers
from studyquiz.services.quiz.store import (
    AnswerRecord,
    QuestionRecord,
    QuizAttempt,
    QuizStatus,
    QuizStore,
    utcnow,
)
from studyquiz.services.sse import SSEEmitter

logger = logging.getLogger(__name__)

GENERATION_TIMEOUT_MESSAGE = "Generation timed out. Please try again."
GRADING_TIMEOUT_MESSAGE = "Grading timed out. Please try again."
MCQ_CORRECT_FEEDBACK = "Correct!"


@dataclass
class PreparedGeneration:
    session_id: str
    user_id: str
    subject: str
    goal: str
    materials_text: str
    materials_used: bool


@dataclass
class GenerationParams:
    prepared: PreparedGeneration
    difficulty: Difficulty
    answer_format: AnswerFormat
    question_count: int


@dataclass
class GradingContext:
    quiz_attempt_id: str
    user_id: str
    subject: str
    questions: List[QuestionRecord]
    # question id -> submitted answer (None when never answered)
    answers: Dict[str, Optional[str]] = field(default_factory=dict)


# ── Helpers ───────────────────────────────────────────────────


def _assert_owner(owner_id: str, user_id: str) -> None:
    if owner_id != user_id:
        raise AppError(ErrorKind.FORBIDDEN, "You do not have access to this resource")


async def _require_attempt(store: QuizStore, quiz_id: str, user_id: str) -> QuizAttempt:
    attempt = await store.get_attempt(quiz_id)
    if attempt is None:
        raise AppError(ErrorKind.NOT_FOUND, "Quiz not found")
    _assert_owner(attempt.user_id, user_id)
    return attempt


def public_question(record: QuestionRecord) -> Dict[str, Any]:
    """Question as shown while taking the quiz: no answer, no explanation."""
    return {
        "id": record.id,
        "questionNumber": record.question_number,
        "questionType": record.question_type,
        "questionText": record.question_text,
        "options": record.options,
    }


async def _load_grading_context(store: QuizStore, attempt: QuizAttempt) -> GradingContext:
    session = await store.get_session(attempt.session_id)
    questions = await store.list_questions(attempt.id)
    answers = {a.question_id: a.user_answer for a in await store.list_answers(attempt.id)}
    return GradingContext(
        quiz_attempt_id=attempt.id,
        user_id=attempt.user_id,
        subject=session.subject if session else "",
        questions=questions,
        answers=answers,
    )


# ── Generation ────────────────────────────────────────────────


async def prepare_generation(store: QuizStore, session_id: str, user_id: str) -> PreparedGeneration:
    """Pre-stream checks for quiz generation.

    Raises:
        AppError: 404 unknown session, 403 foreign session, 409 when a
            generation for this session is still running.
    """
    session = await store.get_session(session_id)
    if session is None:
        raise AppError(ErrorKind.NOT_FOUND, "Session not found")
    _assert_owner(session.user_id, user_id)

    active = await store.find_attempt_by_status(session_id, QuizStatus.GENERATING)
    if active is not None:
        raise AppError(ErrorKind.CONFLICT, "Quiz already generating for this session")

    return PreparedGeneration(
        session_id=session.id,
        user_id=user_id,
        subject=session.subject,
        goal=session.goal,
        materials_text="\n\n".join(session.materials),
        materials_used=bool(session.materials),
    )


async def execute_generation(
    params: GenerationParams,
    emitter: SSEEmitter,
    store: QuizStore,
    invoker: ModelInvoker,
) -> None:
    """Generate, persist and stream a quiz. Never raises."""
    prepared = params.prepared
    emitter.set_deadline(settings.SSE_SERVER_TIMEOUT_SECONDS, GENERATION_TIMEOUT_MESSAGE)
    attempt: Optional[QuizAttempt] = None

    try:
        attempt = await store.create_attempt(QuizAttempt(
            session_id=prepared.session_id,
            user_id=prepared.user_id,
            difficulty=params.difficulty.value,
            answer_format=params.answer_format.value,
            question_count=params.question_count,
            materials_used=prepared.materials_used,
        ))
        emitter.progress("Analyzing materials...")

        request = GenerationRequest(
            subject=prepared.subject,
            goal=prepared.goal,
            difficulty=params.difficulty,
            answer_format=params.answer_format,
            question_count=params.question_count,
            materials_text=prepared.materials_text or None,
        )
        saved = 0

        async def on_question(question: GeneratedQuestion) -> None:
            nonlocal saved
            record = await store.create_question(QuestionRecord(
                quiz_attempt_id=attempt.id,
                question_number=question.question_number,
                question_type=question.question_type.value,
                question_text=question.question_text,
                options=list(question.options) if question.options is not None else None,
                correct_answer=question.correct_answer,
                explanation=question.explanation,
                difficulty=question.difficulty.value,
                tags=list(question.tags),
            ))
            await store.create_answer(AnswerRecord(question_id=record.id, quiz_attempt_id=attempt.id))
            saved += 1
            emitter.question(public_question(record))
            emitter.progress(f"Generating question {saved}/{params.question_count}...")

        await generate_quiz(request, on_question, invoker=invoker)

        # Questions are saved: the quiz is takeable even if nobody is listening.
        await store.update_attempt(
            attempt.id,
            status=QuizStatus.IN_PROGRESS,
            question_count=saved,
            started_at=utcnow(),
        )
        logger.info(
            "Quiz %s generated: %d question(s) session=%s client_connected=%s",
            attempt.id, saved, prepared.session_id, emitter.connected,
            extra={"quiz_attempt_id": attempt.id, "session_id": prepared.session_id},
        )
        emitter.complete({"quizAttemptId": attempt.id})

    except Exception as exc:
        logger.error(
            "Quiz generation failed session=%s quiz=%s: %s",
            prepared.session_id, attempt.id if attempt else None, exc,
            exc_info=not isinstance(exc, AppError),
            extra={"session_id": prepared.session_id, "quiz_attempt_id": attempt.id if attempt else None},
        )
        emitter.error(GENERATION_FAILED_MESSAGE)
        if attempt is not None:
            await _mark_attempt(store, attempt.id, QuizStatus.FAILED)


async def _mark_attempt(store: QuizStore, attempt_id: str, status: QuizStatus) -> None:
    try:
        await store.update_attempt(attempt_id, status=status)
    except Exception:
        logger.exception("Could not set quiz %s to %s", attempt_id, status.value)


# ── Taking a quiz ─────────────────────────────────────────────


async def _store_answers(store: QuizStore, attempt: QuizAttempt, answers: Mapping[str, str]) -> int:
    """Write *answers* onto this attempt's answer rows.

    Raises:
        AppError: 400 when an answer names a question outside this quiz.
    """
    known_ids = {q.id for q in await store.list_questions(attempt.id)}
    unknown = sorted(set(answers) - known_ids)
    if unknown:
        raise AppError(
            ErrorKind.BAD_REQUEST,
            "Answer references a question that is not part of this quiz",
            details={"questionIds": unknown},
        )

    answered_at = utcnow()
    for question_id, answer in answers.items():
        await store.update_answer(question_id, user_answer=answer, answered_at=answered_at)
    return len(answers)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def get_quiz(store: QuizStore, quiz_id: str, user_id: str) -> Dict[str, Any]:
    """Quiz as persisted so far, for a client resuming after a lost stream.

    Questions use the public view (no correct answer or explanation); saved
    answers come back with their ``userAnswer`` only.
    """
    attempt = await _require_attempt(store, quiz_id, user_id)
    questions = await store.list_questions(attempt.id)
    answers = await store.list_answers(attempt.id)

    return {
        "id": attempt.id,
        "sessionId": attempt.session_id,
        "difficulty": attempt.difficulty,
        "answerFormat": attempt.answer_format,
        "questionCount": attempt.question_count,
        "status": attempt.status.value,
        "materialsUsed": attempt.materials_used,
        "createdAt": _iso(attempt.created_at),
        "questions": [public_question(q) for q in questions],
        "answers": [
            {
                "id": a.id,
                "questionId": a.question_id,
                "userAnswer": a.user_answer,
                "answeredAt": _iso(a.answered_at),
            }
            for a in answers
        ],
    }


async def save_answers(
    store: QuizStore,
    quiz_id: str,
    user_id: str,
    answers: Mapping[str, str],
) -> Dict[str, int]:
    """Auto-save answers while the quiz is being taken.

    Raises:
        AppError: 404/403 as usual, 409 unless the quiz is in progress,
            400 when an answer names a question outside this quiz.
    """
    attempt = await _require_attempt(store, quiz_id, user_id)
    if attempt.status is not QuizStatus.IN_PROGRESS:
        raise AppError(ErrorKind.CONFLICT, "Quiz is not in progress")

    saved = await _store_answers(store, attempt, answers)
    logger.debug("Saved %d answer(s) for quiz %s", saved, attempt.id)
    return {"saved": saved}


# ── Grading ───────────────────────────────────────────────────


async def prepare_grading(
    store: QuizStore,
    quiz_id: str,
    user_id: str,
    answers: Mapping[str, str],
) -> GradingContext:
    """Save submitted answers and move the attempt to ``grading``.

    Unanswered questions are allowed; they score 0.

    Raises:
        AppError: 404/403 as usual, 409 unless the quiz is in progress,
            400 when an answer names a question outside this quiz.
    """
    attempt = await _require_attempt(store, quiz_id, user_id)
    if attempt.status is not QuizStatus.IN_PROGRESS:
        raise AppError(ErrorKind.CONFLICT, "Quiz is not in progress")

    await _store_answers(store, attempt, answers)

    await store.update_attempt(attempt.id, status=QuizStatus.GRADING)
    return await _load_grading_context(store, attempt)


async def prepare_regrade(store: QuizStore, quiz_id: str, user_id: str) -> GradingContext:
    """Retry grading for a quiz left ``submitted_ungraded``."""
    attempt = await _require_attempt(store, quiz_id, user_id)
    if attempt.status is not QuizStatus.SUBMITTED_UNGRADED:
        raise AppError(ErrorKind.CONFLICT, "Quiz is not awaiting regrade")

    await store.update_attempt(attempt.id, status=QuizStatus.GRADING)
    return await _load_grading_context(store, attempt)


def grade_mcq(question: QuestionRecord, user_answer: Optional[str]) -> GradedAnswer:
    """Exact-match grading for multiple choice."""
    correct = user_answer is not None and user_answer == question.correct_answer
    return GradedAnswer(
        question_number=question.question_number,
        score=1 if correct else 0,
        is_correct=correct,
        feedback=MCQ_CORRECT_FEEDBACK if correct
        else f"Incorrect. The correct answer is: {question.correct_answer}",
    )


async def _record_grade(
    store: QuizStore,
    emitter: SSEEmitter,
    question: QuestionRecord,
    graded: GradedAnswer,
) -> None:
    await store.update_answer(
        question.id,
        score=graded.score,
        is_correct=graded.is_correct,
        feedback=graded.feedback,
        graded_at=utcnow(),
    )
    emitter.graded({
        "questionId": question.id,
        "questionNumber": question.question_number,
        "score": graded.score,
        "isCorrect": graded.is_correct,
    })


def score_percent(scores: List[Optional[float]]) -> float:
    """Share of available points, as a percentage with one decimal."""
    if not scores:
        return 0.0
    return round(sum(s or 0 for s in scores) / len(scores) * 100, 1)


async def execute_grading(
    context: GradingContext,
    emitter: SSEEmitter,
    store: QuizStore,
    invoker: ModelInvoker,
) -> None:
    """Grade, persist and stream results. Never raises.

    MCQ answers are graded instantly; free-text answers go to the model in
    one batch. Grades are emitted MCQ first, then free text.
    """
    quiz_id = context.quiz_attempt_id
    emitter.set_deadline(settings.SSE_SERVER_TIMEOUT_SECONDS, GRADING_TIMEOUT_MESSAGE)

    try:
        emitter.progress("Grading answers...")
        mcq = [q for q in context.questions if q.question_type == QuestionType.MCQ.value]
        free_text = [q for q in context.questions if q.question_type == QuestionType.FREE_TEXT.value]

        for question in mcq:
            await _record_grade(store, emitter, question, grade_mcq(question, context.answers.get(question.id)))

        if free_text:
            by_number = {q.question_number: q for q in free_text}
            request = GradingRequest(
                subject=context.subject,
                entries=[
                    GradingEntry(
                        question_number=q.question_number,
                        question_text=q.question_text,
                        correct_answer=q.correct_answer,
                        user_answer=context.answers.get(q.id) or "",
                    )
                    for q in free_text
                ],
            )

            async def on_graded(graded: GradedAnswer) -> None:
                await _record_grade(store, emitter, by_number[graded.question_number], graded)

            await grade_answers(request, on_graded, invoker=invoker)

        answers = await store.list_answers(quiz_id)
        score = score_percent([a.score for a in answers])
        await store.update_attempt(
            quiz_id,
            status=QuizStatus.COMPLETED,
            score=score,
            completed_at=utcnow(),
        )
        logger.info(
            "Quiz %s graded: score=%.1f mcq=%d free_text=%d",
            quiz_id, score, len(mcq), len(free_text),
            extra={"quiz_attempt_id": quiz_id},
        )
        emitter.complete({"quizAttemptId": quiz_id, "score": score})

    except Exception as exc:
        logger.error(
            "Grading failed quiz=%s: %s", quiz_id, exc,
            exc_info=not isinstance(exc, AppError),
            extra={"quiz_attempt_id": quiz_id},
        )
        emitter.error(GRADING_FAILED_MESSAGE)
        await _mark_attempt(store, quiz_id, QuizStatus.SUBMITTED_UNGRADED)


# ── Results ───────────────────────────────────────────────────


async def get_results(store: QuizStore, quiz_id: str, user_id: str) -> Dict[str, Any]:
    """Completed quiz with every answer revealed, plus a score summary."""
    attempt = await _require_attempt(store, quiz_id, user_id)
    if attempt.status is not QuizStatus.COMPLETED:
        raise AppError(ErrorKind.CONFLICT, "Results are only available for completed quizzes")

    questions = await store.list_questions(attempt.id)
    answers = {a.question_id: a for a in await store.list_answers(attempt.id)}

    summary = {"correct": 0, "partial": 0, "incorrect": 0, "total": len(questions)}
    items = []
    for q in questions:
        answer = answers.get(q.id)
        score = answer.score if answer else None
        if score == 1:
            summary["correct"] += 1
        elif score == 0.5:
            summary["partial"] += 1
        else:
            summary["incorrect"] += 1

        items.append({
            "id": q.id,
            "questionNumber": q.question_number,
            "questionType": q.question_type,
            "questionText": q.question_text,
            "options": q.options,
            "correctAnswer": q.correct_answer,
            "explanation": q.explanation,
            "tags": q.tags,
            "answer": {
                "userAnswer": answer.user_answer if answer else None,
                "isCorrect": answer.is_correct if answer else None,
                "score": score,
                "feedback": answer.feedback if answer else None,
            },
        })

    return {
        "id": attempt.id,
        "sessionId": attempt.session_id,
        "status": attempt.status.value,
        "difficulty": attempt.difficulty,
        "answerFormat": attempt.answer_format,
        "questionCount": attempt.question_count,
        "materialsUsed": attempt.materials_used,
        "score": attempt.score,
        "completedAt": _iso(attempt.completed_at),
        "createdAt": _iso(attempt.created_at),
        "questions": items,
        "summary": summary,
    }
