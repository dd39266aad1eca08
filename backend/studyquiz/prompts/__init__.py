"""Prompt template loader.

Each ``build_*`` function loads a ``.txt`` template from this package
directory and substitutes ``{{PLACEHOLDER}}`` markers. No I/O beyond the
cached template read.
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from typing import Dict, Sequence

from studyquiz.core.sanitize import escape_xml
from studyquiz.prompts.constants import NO_ANSWER_SENTINEL, NO_MATERIALS_TEXT, SYSTEM_MARKER
from studyquiz.services.llm_service.llm_schemas import GenerationRequest, GradingEntry

_DIR = os.path.dirname(__file__)
_PLACEHOLDER_RE = re.compile(r"\{\{([A-Z_]+)\}\}")


@lru_cache(maxsize=32)
def _load(filename: str) -> str:
    """Read a template file, caching the result."""
    with open(os.path.join(_DIR, filename), encoding="utf-8") as f:
        return f.read()


def _render(filename: str, subs: Dict[str, str]) -> str:
    """Load *filename* and fill every placeholder in one pass.

    Substituted values are never rescanned, so user text containing
    ``{{...}}`` stays literal.
    """
    text = _load(filename)
    return _PLACEHOLDER_RE.sub(lambda m: subs.get(m.group(1), m.group(0)), text).strip()


# ── Generation ────────────────────────────────────────────


def get_difficulty_rubrics() -> Dict[str, str]:
    return {
        "easy": _load("difficulty_easy.txt").strip(),
        "medium": _load("difficulty_medium.txt").strip(),
        "hard": _load("difficulty_hard.txt").strip(),
    }


@lru_cache(maxsize=1)
def build_generation_system_prompt() -> str:
    rubrics = get_difficulty_rubrics()
    return _render("generation_system_prompt.txt", {
        "SYSTEM_MARKER": SYSTEM_MARKER,
        "EASY_RUBRIC": rubrics["easy"],
        "MEDIUM_RUBRIC": rubrics["medium"],
        "HARD_RUBRIC": rubrics["hard"],
    })


def build_generation_user_message(params: GenerationRequest) -> str:
    return _render("generation_user_prompt.txt", {
        "SUBJECT": params.subject,
        "GOAL": params.goal,
        "DIFFICULTY": params.difficulty.value,
        "ANSWER_FORMAT": params.answer_format.value,
        "QUESTION_COUNT": str(params.question_count),
        "MATERIALS": params.materials_text if params.materials_text else NO_MATERIALS_TEXT,
    })


# ── Grading ───────────────────────────────────────────────


@lru_cache(maxsize=1)
def build_grading_system_prompt() -> str:
    return _render("grading_system_prompt.txt", {
        "SYSTEM_MARKER": SYSTEM_MARKER,
        "NO_ANSWER": NO_ANSWER_SENTINEL,
    })


def render_student_answer(user_answer: str) -> str:
    """Escape a submitted answer, or return the sentinel for a blank one."""
    if not user_answer or not user_answer.strip():
        return NO_ANSWER_SENTINEL
    return escape_xml(user_answer)


def build_grading_user_message(subject: str, entries: Sequence[GradingEntry]) -> str:
    questions_and_answers = "\n\n".join(
        f"Question {e.question_number}: {e.question_text}\n"
        f"Expected answer: {e.correct_answer}"
        for e in entries
    )
    student_answers = "\n\n".join(
        f"Answer {e.question_number}: {render_student_answer(e.user_answer)}"
        for e in entries
    )
    return _render("grading_user_prompt.txt", {
        "SUBJECT": subject,
        "ANSWER_COUNT": str(len(entries)),
        "QUESTIONS_AND_ANSWERS": questions_and_answers,
        "STUDENT_ANSWERS": student_answers,
    })
