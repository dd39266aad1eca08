"""Persistence seam for quiz attempts, questions and answers.

``QuizStore`` is the async interface the stream service talks to; the
process-local ``InMemoryQuizStore`` backs the app and the tests. Records are
plain dataclasses; ids are uuid4 strings.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


class QuizStatus(str, Enum):
    GENERATING = "generating"
    IN_PROGRESS = "in_progress"
    GRADING = "grading"
    COMPLETED = "completed"
    SUBMITTED_UNGRADED = "submitted_ungraded"
    FAILED = "failed"


def _new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StudySession:
    user_id: str
    subject: str
    goal: str
    # Extracted text of each ready material, in upload order
    materials: List[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)


@dataclass
class QuizAttempt:
    session_id: str
    user_id: str
    difficulty: str
    answer_format: str
    question_count: int
    materials_used: bool
    status: QuizStatus = QuizStatus.GENERATING
    score: Optional[float] = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class QuestionRecord:
    quiz_attempt_id: str
    question_number: int
    question_type: str
    question_text: str
    options: Optional[List[str]]
    correct_answer: str
    explanation: str
    difficulty: str
    tags: List[str] = field(default_factory=list)
    id: str = field(default_factory=_new_id)


@dataclass
class AnswerRecord:
    question_id: str
    quiz_attempt_id: str
    user_answer: Optional[str] = None
    score: Optional[float] = None
    is_correct: Optional[bool] = None
    feedback: Optional[str] = None
    id: str = field(default_factory=_new_id)
    answered_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None


class QuizStore(ABC):
    """Async persistence interface used by the quiz stream service."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[StudySession]:
        raise NotImplementedError

    @abstractmethod
    async def find_attempt_by_status(self, session_id: str, status: QuizStatus) -> Optional[QuizAttempt]:
        raise NotImplementedError

    @abstractmethod
    async def create_attempt(self, attempt: QuizAttempt) -> QuizAttempt:
        raise NotImplementedError

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Optional[QuizAttempt]:
        raise NotImplementedError

    @abstractmethod
    async def update_attempt(self, attempt_id: str, **changes) -> QuizAttempt:
        raise NotImplementedError

    @abstractmethod
    async def create_question(self, question: QuestionRecord) -> QuestionRecord:
        raise NotImplementedError

    @abstractmethod
    async def list_questions(self, attempt_id: str) -> List[QuestionRecord]:
        raise NotImplementedError

    @abstractmethod
    async def create_answer(self, answer: AnswerRecord) -> AnswerRecord:
        raise NotImplementedError

    @abstractmethod
    async def list_answers(self, attempt_id: str) -> List[AnswerRecord]:
        raise NotImplementedError

    @abstractmethod
    async def update_answer(self, question_id: str, **changes) -> AnswerRecord:
        raise NotImplementedError


class InMemoryQuizStore(QuizStore):
    """Dict-backed store. Single event loop; no locking needed."""

    def __init__(self):
        self.sessions: Dict[str, StudySession] = {}
        self.attempts: Dict[str, QuizAttempt] = {}
        self.questions: Dict[str, QuestionRecord] = {}
        # keyed by question id; one answer row per question
        self.answers: Dict[str, AnswerRecord] = {}

    # ── Sessions ──────────────────────────────────────────

    def add_session(self, session: StudySession) -> StudySession:
        self.sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> Optional[StudySession]:
        return self.sessions.get(session_id)

    # ── Attempts ──────────────────────────────────────────

    async def find_attempt_by_status(self, session_id: str, status: QuizStatus) -> Optional[QuizAttempt]:
        for attempt in self.attempts.values():
            if attempt.session_id == session_id and attempt.status is status:
                return attempt
        return None

    async def create_attempt(self, attempt: QuizAttempt) -> QuizAttempt:
        self.attempts[attempt.id] = attempt
        return attempt

    async def get_attempt(self, attempt_id: str) -> Optional[QuizAttempt]:
        return self.attempts.get(attempt_id)

    async def update_attempt(self, attempt_id: str, **changes) -> QuizAttempt:
        attempt = self.attempts.get(attempt_id)
        if attempt is None:
            raise KeyError(f"Quiz attempt {attempt_id} not found")
        for name, value in changes.items():
            if not hasattr(attempt, name):
                raise AttributeError(f"QuizAttempt has no field {name!r}")
            setattr(attempt, name, value)
        return attempt

    # ── Questions & answers ───────────────────────────────

    async def create_question(self, question: QuestionRecord) -> QuestionRecord:
        self.questions[question.id] = question
        return question

    async def list_questions(self, attempt_id: str) -> List[QuestionRecord]:
        rows = [q for q in self.questions.values() if q.quiz_attempt_id == attempt_id]
        return sorted(rows, key=lambda q: q.question_number)

    async def create_answer(self, answer: AnswerRecord) -> AnswerRecord:
        self.answers[answer.question_id] = answer
        return answer

    async def list_answers(self, attempt_id: str) -> List[AnswerRecord]:
        return [a for a in self.answers.values() if a.quiz_attempt_id == attempt_id]

    async def update_answer(self, question_id: str, **changes) -> AnswerRecord:
        answer = self.answers.get(question_id)
        if answer is None:
            raise KeyError(f"Answer for question {question_id} not found")
        for name, value in changes.items():
            if not hasattr(answer, name):
                raise AttributeError(f"AnswerRecord has no field {name!r}")
            setattr(answer, name, value)
        return answer
