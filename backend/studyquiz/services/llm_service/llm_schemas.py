"""Pydantic schemas for pipeline inputs and validated structured LLM outputs.

Wire/JSON field names are camelCase (``questionNumber``); Python attributes
are snake_case. Output schemas are ``RootModel`` lists so a whole
``<questions>`` or ``<results>`` block validates in one call, with
cross-item checks driven by the validation ``context``.
"""

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, RootModel, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from studyquiz.core.config import settings

MCQ_OPTIONS_COUNT = 4


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class AnswerFormat(str, Enum):
    MCQ = "mcq"
    FREE_TEXT = "free_text"
    MIXED = "mixed"


class QuestionType(str, Enum):
    MCQ = "mcq"
    FREE_TEXT = "free_text"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ── Generation ────────────────────────────────────────────


class GenerationRequest(_CamelModel):
    subject: str
    goal: str
    difficulty: Difficulty
    answer_format: AnswerFormat
    question_count: int = Field(ge=1)
    materials_text: Optional[str] = None

    @field_validator("question_count")
    @classmethod
    def _within_configured_max(cls, value: int) -> int:
        if value > settings.MAX_QUESTION_COUNT:
            raise ValueError(f"questionCount must be at most {settings.MAX_QUESTION_COUNT}")
        return value


class GeneratedQuestion(_CamelModel):
    question_number: int = Field(ge=1)
    question_type: QuestionType
    question_text: str = Field(min_length=1)
    options: Optional[List[str]] = Field(default=None, min_length=MCQ_OPTIONS_COUNT, max_length=MCQ_OPTIONS_COUNT)
    correct_answer: str = Field(min_length=1)
    explanation: str = Field(min_length=1)
    difficulty: Difficulty
    tags: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_type_invariants(self) -> "GeneratedQuestion":
        if self.question_type is QuestionType.MCQ:
            if self.options is None:
                raise ValueError("MCQ questions must have options")
            if self.correct_answer not in self.options:
                raise ValueError("MCQ correctAnswer must be one of the options")
        elif self.options is not None:
            raise ValueError("Free-text questions must not have options")
        return self


class QuizOutput(RootModel[List[GeneratedQuestion]]):
    """Validated ``<questions>`` block.

    Context keys (optional): ``expected_count`` and ``answer_format``.
    """

    @model_validator(mode="after")
    def _check_sequence(self, info: ValidationInfo) -> "QuizOutput":
        questions = self.root
        if not questions:
            raise ValueError("No questions found in LLM output")
        for position, question in enumerate(questions, start=1):
            if question.question_number != position:
                raise ValueError(
                    f"questionNumber {question.question_number} at position {position}"
                )

        context = info.context or {}
        expected = context.get("expected_count")
        if expected is not None and len(questions) != expected:
            raise ValueError(f"Expected {expected} questions, got {len(questions)}")

        answer_format = context.get("answer_format")
        if answer_format is not None and answer_format is not AnswerFormat.MIXED:
            wanted = QuestionType(answer_format.value)
            if any(q.question_type is not wanted for q in questions):
                raise ValueError(f"All questions must be {wanted.value}")
        return self


# ── Grading ───────────────────────────────────────────────


class GradingEntry(_CamelModel):
    question_number: int = Field(ge=1)
    question_text: str
    correct_answer: str
    user_answer: str = ""


class GradingRequest(_CamelModel):
    subject: str
    entries: List[GradingEntry] = Field(min_length=1)


class RawGradedAnswer(_CamelModel):
    question_number: int = Field(ge=1)
    score: float = Field(ge=0, le=1)
    is_correct: bool
    feedback: str = Field(min_length=1)


class GradedAnswersOutput(RootModel[List[RawGradedAnswer]]):
    """Validated ``<results>`` block.

    Context key (optional): ``expected_numbers``, the question numbers that
    were sent for grading. The block must grade each of them exactly once.
    """

    @model_validator(mode="after")
    def _check_coverage(self, info: ValidationInfo) -> "GradedAnswersOutput":
        numbers = [a.question_number for a in self.root]
        if len(numbers) != len(set(numbers)):
            raise ValueError("Duplicate questionNumber in grading output")

        context = info.context or {}
        expected = context.get("expected_numbers")
        if expected is not None and set(numbers) != set(expected):
            raise ValueError(
                f"Graded questions {sorted(numbers)} do not match requested {sorted(expected)}"
            )
        return self


class GradedAnswer(_CamelModel):
    question_number: int = Field(ge=1)
    score: Literal[0, 0.5, 1]
    is_correct: bool
    feedback: str = Field(min_length=1)
