"""
Shared pytest fixtures and configuration for the entire test suite.
Applies to all subdirectories: unit/, api/
"""

import sys
import os
import json
import uuid
import tempfile
from types import SimpleNamespace

import pytest

# ── Ensure backend is importable from every pytest session ──────────────────
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "backend"))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

# Minimal env so that Pydantic Settings can validate on import
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-unit-tests-only-32chars!")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="studyquiz-logs-"))


# ── Fake user fixture ────────────────────────────────────────────────────────

@pytest.fixture
def fake_user():
    """Return a user object as produced by ``get_current_user``."""
    return SimpleNamespace(id="test-user-id-" + str(uuid.uuid4())[:8])


@pytest.fixture
def auth_headers(fake_user):
    from studyquiz.services.auth.security import create_access_token
    return {"Authorization": f"Bearer {create_access_token({'sub': fake_user.id})}"}


# ── In-memory store ──────────────────────────────────────────────────────────

@pytest.fixture
def store():
    from studyquiz.services.quiz.store import InMemoryQuizStore
    return InMemoryQuizStore()


@pytest.fixture
def study_session(store, fake_user):
    """A session owned by ``fake_user`` with one material."""
    from studyquiz.services.quiz.store import StudySession
    return store.add_session(StudySession(
        user_id=fake_user.id,
        subject="Distributed Systems",
        goal="Understand consensus protocols",
        materials=["Raft elects a leader using randomized timeouts."],
    ))


# ── Scripted model invoker ───────────────────────────────────────────────────

class ScriptedInvoker:
    """Stands in for ``ModelInvoker``: returns queued replies in order.

    A queued ``Exception`` instance is raised instead of returned. Every call
    is recorded in ``calls`` with a copy of the conversation it was sent.
    """

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def invoke(self, system_prompt, history, temperature):
        self.calls.append({
            "system_prompt": system_prompt,
            "history": [dict(turn) for turn in history],
            "temperature": temperature,
        })
        if not self.responses:
            raise AssertionError("Unexpected extra model call")
        reply = self.responses.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def scripted_invoker():
    """Factory: ``scripted_invoker(reply1, reply2, ...)``."""
    return lambda *responses: ScriptedInvoker(responses)


# ── Model reply builders ─────────────────────────────────────────────────────

def _question(number, question_type="mcq", difficulty="medium"):
    if question_type == "mcq":
        return {
            "questionNumber": number,
            "questionType": "mcq",
            "questionText": f"Which statement about topic {number} is true?",
            "options": ["Option A", "Option B", "Option C", "Option D"],
            "correctAnswer": "Option B",
            "explanation": f"Option B is the defining property of topic {number}.",
            "difficulty": difficulty,
            "tags": ["consensus"],
        }
    return {
        "questionNumber": number,
        "questionType": "free_text",
        "questionText": f"Explain the trade-off behind topic {number}.",
        "options": None,
        "correctAnswer": f"Topic {number} trades latency for safety.",
        "explanation": f"Topic {number} waits for a quorum before committing.",
        "difficulty": difficulty,
        "tags": [],
    }


@pytest.fixture
def question_payload():
    """Factory for one camelCase question dict as the model would emit it."""
    return _question


@pytest.fixture
def quiz_reply():
    """Factory: full model reply with an analysis and a <questions> block."""
    def build(count=3, question_type="mcq", questions=None):
        items = questions if questions is not None else [_question(i, question_type) for i in range(1, count + 1)]
        return (
            "<analysis>Covering leader election and log replication.</analysis>\n"
            f"<questions>\n{json.dumps(items, indent=2)}\n</questions>"
        )
    return build


@pytest.fixture
def grading_reply():
    """Factory: model reply grading ``{questionNumber: score}``."""
    def build(scores, feedback="Mentions the quorum requirement."):
        items = [
            {
                "questionNumber": number,
                "score": score,
                "isCorrect": score >= 1,
                "feedback": feedback,
            }
            for number, score in scores.items()
        ]
        return (
            "<evaluation>Compared each answer with the expected one.</evaluation>\n"
            f"<results>{json.dumps(items)}</results>"
        )
    return build


# ── SSE parsing ──────────────────────────────────────────────────────────────

def _parse_sse(body):
    events = []
    for chunk in body.split("\n\n"):
        for line in chunk.split("\n"):
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
                break
    return events


@pytest.fixture
def parse_sse():
    """Parse an SSE body into the list of JSON events it carries."""
    return _parse_sse
