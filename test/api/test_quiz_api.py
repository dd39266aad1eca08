"""
API tests for the quiz routes: generate (SSE), submit (SSE), regrade (SSE),
results, resume (GET quiz) and auto-save (PATCH answers).
Tests: auth enforcement, JSON errors before the stream opens, query
validation, SSE headers and event sequence, full take-a-quiz flow, re-fetch after a lost stream.
Uses TestClient with the in-memory store and a scripted invoker; no live model.
"""

import sys
import os

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "..", "backend"))
sys.path.insert(0, BACKEND_DIR)

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-unit-tests-only-32chars!")

from studyquiz.core.errors import GENERATION_FAILED_MESSAGE, GRADING_FAILED_MESSAGE, ModelUnavailableError
from studyquiz.main import app
from studyquiz.routes.utils import get_model_invoker, get_quiz_store
from studyquiz.services.auth.security import create_access_token
from studyquiz.services.quiz.store import QuizStatus, StudySession


@pytest.fixture
def invoker_box():
    """Holds the invoker the app will use; tests swap ``box['invoker']``."""
    return {"invoker": None}


@pytest.fixture
def client(store, invoker_box):
    app.dependency_overrides[get_quiz_store] = lambda: store
    app.dependency_overrides[get_model_invoker] = lambda: invoker_box["invoker"]
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
    app.dependency_overrides.clear()


def _generate_url(session_id, difficulty="medium", fmt="mcq", count=3):
    return f"/sessions/{session_id}/quizzes/generate?difficulty={difficulty}&format={fmt}&count={count}"


def _generate(client, session_id, headers, **query):
    return client.get(_generate_url(session_id, **query), headers=headers)


# ────────────────────────────────────────────────────────────────────────────
# Authentication enforcement
# ────────────────────────────────────────────────────────────────────────────

class TestAuthentication:

    def test_generate_without_token_401(self, client, study_session):
        r = client.get(_generate_url(study_session.id))
        assert r.status_code == 401
        assert r.headers["WWW-Authenticate"] == "Bearer"

    def test_invalid_token_401(self, client, study_session):
        r = _generate(client, study_session.id, {"Authorization": "Bearer invalid.token"})
        assert r.status_code == 401

    @pytest.mark.parametrize("path", ["/quizzes/q1/submit", "/quizzes/q1/regrade"])
    def test_post_routes_require_token(self, client, path):
        assert client.post(path, json={"answers": []}).status_code == 401

    def test_results_require_token(self, client):
        assert client.get("/quizzes/q1/results").status_code == 401


# ────────────────────────────────────────────────────────────────────────────
# Pre-stream errors are JSON, never SSE
# ────────────────────────────────────────────────────────────────────────────

class TestPreStreamErrors:

    def test_unknown_session_404(self, client, auth_headers):
        r = _generate(client, "missing", auth_headers)
        assert r.status_code == 404
        assert r.headers["content-type"].startswith("application/json")
        assert r.json() == {"detail": "Session not found", "code": "NOT_FOUND"}

    def test_foreign_session_403(self, client, store):
        session = store.add_session(StudySession(user_id="owner", subject="S", goal="G"))
        headers = {"Authorization": f"Bearer {create_access_token({'sub': 'intruder'})}"}
        r = _generate(client, session.id, headers)
        assert r.status_code == 403
        assert r.json()["code"] == "FORBIDDEN"

    def test_generation_in_flight_409(self, client, store, study_session, fake_user, auth_headers):
        from studyquiz.services.quiz.store import QuizAttempt
        store.attempts["busy"] = QuizAttempt(
            session_id=study_session.id, user_id=fake_user.id, difficulty="easy",
            answer_format="mcq", question_count=3, materials_used=True, id="busy",
        )
        r = _generate(client, study_session.id, auth_headers)
        assert r.status_code == 409
        assert r.json()["code"] == "CONFLICT"

    @pytest.mark.parametrize("query", [
        {"count": 0},
        {"count": 21},
        {"fmt": "essay"},
        {"difficulty": "impossible"},
    ])
    def test_bad_query_400(self, client, study_session, auth_headers, query):
        r = _generate(client, study_session.id, auth_headers, **query)
        assert r.status_code == 400
        body = r.json()
        assert body["code"] == "VALIDATION_ERROR"
        assert body["details"]

    def test_submit_unknown_quiz_404(self, client, auth_headers):
        r = client.post("/quizzes/nope/submit", json={"answers": []}, headers=auth_headers)
        assert r.status_code == 404

    def test_results_unknown_quiz_404(self, client, auth_headers):
        assert client.get("/quizzes/nope/results", headers=auth_headers).status_code == 404


# ────────────────────────────────────────────────────────────────────────────
# Generation stream
# ────────────────────────────────────────────────────────────────────────────

class TestGenerationStream:

    def test_headers_and_events(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply, parse_sse,
    ):
        invoker_box["invoker"] = scripted_invoker(quiz_reply(3))
        r = _generate(client, study_session.id, auth_headers)

        assert r.status_code == 200
        assert r.headers["content-type"].startswith("text/event-stream")
        assert r.headers["cache-control"] == "no-cache"
        assert r.headers["x-accel-buffering"] == "no"

        events = parse_sse(r.text)
        assert [e["type"] for e in events].count("question") == 3
        assert events[0] == {"type": "progress", "message": "Analyzing materials..."}
        assert events[-1]["type"] == "complete"
        assert "correctAnswer" not in events[1]["data"]

    def test_invalid_model_output_is_in_band_error(
        self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, parse_sse,
    ):
        invoker_box["invoker"] = scripted_invoker("no block here", "still nothing")
        r = _generate(client, study_session.id, auth_headers)

        assert r.status_code == 200
        events = parse_sse(r.text)
        assert events[-1] == {"type": "error", "message": GENERATION_FAILED_MESSAGE}
        assert [a.status for a in store.attempts.values()] == [QuizStatus.FAILED]


# ────────────────────────────────────────────────────────────────────────────
# Take a quiz: generate -> submit -> results
# ────────────────────────────────────────────────────────────────────────────

class TestQuizFlow:

    def _generate_mixed(self, client, study_session, auth_headers, invoker_box,
                        scripted_invoker, quiz_reply, question_payload, parse_sse):
        items = [question_payload(1, "mcq"), question_payload(2, "free_text")]
        invoker_box["invoker"] = scripted_invoker(quiz_reply(questions=items))
        events = parse_sse(_generate(client, study_session.id, auth_headers, fmt="mixed", count=2).text)
        quiz_id = events[-1]["data"]["quizAttemptId"]
        questions = [e["data"] for e in events if e["type"] == "question"]
        return quiz_id, questions

    def test_submit_and_results(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker,
        quiz_reply, question_payload, grading_reply, parse_sse,
    ):
        quiz_id, questions = self._generate_mixed(
            client, study_session, auth_headers, invoker_box,
            scripted_invoker, quiz_reply, question_payload, parse_sse,
        )

        invoker_box["invoker"] = scripted_invoker(grading_reply({2: 0.8}))
        r = client.post(
            f"/quizzes/{quiz_id}/submit",
            json={"answers": [
                {"questionId": questions[0]["id"], "answer": "Option B"},
                {"questionId": questions[1]["id"], "answer": "A quorum must acknowledge."},
            ]},
            headers=auth_headers,
        )
        assert r.status_code == 200
        events = parse_sse(r.text)
        graded = [e["data"] for e in events if e["type"] == "graded"]
        assert [(g["questionNumber"], g["score"]) for g in graded] == [(1, 1), (2, 1)]
        assert events[-1] == {"type": "complete", "data": {"quizAttemptId": quiz_id, "score": 100.0}}

        results = client.get(f"/quizzes/{quiz_id}/results", headers=auth_headers).json()
        assert results["score"] == 100.0
        assert results["summary"] == {"correct": 2, "partial": 0, "incorrect": 0, "total": 2}
        assert results["questions"][1]["answer"]["userAnswer"] == "A quorum must acknowledge."
        assert results["questions"][1]["answer"]["score"] == 1
        assert "createdAt" in results

    def test_submit_twice_409(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker,
        quiz_reply, question_payload, grading_reply, parse_sse,
    ):
        quiz_id, _ = self._generate_mixed(
            client, study_session, auth_headers, invoker_box,
            scripted_invoker, quiz_reply, question_payload, parse_sse,
        )
        invoker_box["invoker"] = scripted_invoker(grading_reply({2: 0.0}))
        client.post(f"/quizzes/{quiz_id}/submit", json={"answers": []}, headers=auth_headers)

        r = client.post(f"/quizzes/{quiz_id}/submit", json={"answers": []}, headers=auth_headers)
        assert r.status_code == 409

    def test_foreign_question_id_400(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker,
        quiz_reply, question_payload, parse_sse,
    ):
        quiz_id, _ = self._generate_mixed(
            client, study_session, auth_headers, invoker_box,
            scripted_invoker, quiz_reply, question_payload, parse_sse,
        )
        r = client.post(
            f"/quizzes/{quiz_id}/submit",
            json={"answers": [{"questionId": "elsewhere", "answer": "x"}]},
            headers=auth_headers,
        )
        assert r.status_code == 400
        assert r.json()["details"] == {"questionIds": ["elsewhere"]}

    def test_results_before_completion_409(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker,
        quiz_reply, question_payload, parse_sse,
    ):
        quiz_id, _ = self._generate_mixed(
            client, study_session, auth_headers, invoker_box,
            scripted_invoker, quiz_reply, question_payload, parse_sse,
        )
        assert client.get(f"/quizzes/{quiz_id}/results", headers=auth_headers).status_code == 409

    def test_grading_failure_then_regrade(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker,
        quiz_reply, question_payload, grading_reply, parse_sse,
    ):
        quiz_id, questions = self._generate_mixed(
            client, study_session, auth_headers, invoker_box,
            scripted_invoker, quiz_reply, question_payload, parse_sse,
        )

        invoker_box["invoker"] = scripted_invoker(ModelUnavailableError("provider down"))
        r = client.post(
            f"/quizzes/{quiz_id}/submit",
            json={"answers": [{"questionId": questions[1]["id"], "answer": "quorum"}]},
            headers=auth_headers,
        )
        assert parse_sse(r.text)[-1] == {"type": "error", "message": GRADING_FAILED_MESSAGE}

        invoker_box["invoker"] = scripted_invoker(grading_reply({2: 0.5}))
        r = client.post(f"/quizzes/{quiz_id}/regrade", headers=auth_headers)
        assert r.status_code == 200
        events = parse_sse(r.text)
        # MCQ unanswered scores 0, free text 0.5
        assert events[-1] == {"type": "complete", "data": {"quizAttemptId": quiz_id, "score": 25.0}}

    def test_regrade_when_not_ungraded_409(
        self, client, study_session, auth_headers, invoker_box, scripted_invoker,
        quiz_reply, question_payload, parse_sse,
    ):
        quiz_id, _ = self._generate_mixed(
            client, study_session, auth_headers, invoker_box,
            scripted_invoker, quiz_reply, question_payload, parse_sse,
        )
        assert client.post(f"/quizzes/{quiz_id}/regrade", headers=auth_headers).status_code == 409


# ────────────────────────────────────────────────────────────────────────────
# Resume after a lost stream: GET quiz, PATCH answers
# ────────────────────────────────────────────────────────────────────────────

class TestResumeQuiz:

    def _generated_quiz(self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply):
        invoker_box["invoker"] = scripted_invoker(quiz_reply(3))
        _generate(client, study_session.id, auth_headers)
        return next(a for a in store.attempts.values() if a.session_id == study_session.id)

    def test_refetch_in_progress_quiz(
        self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
    ):
        attempt = self._generated_quiz(
            client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
        )

        r = client.get(f"/quizzes/{attempt.id}", headers=auth_headers)

        assert r.status_code == 200
        body = r.json()
        assert body["status"] == "in_progress"
        assert [q["questionNumber"] for q in body["questions"]] == [1, 2, 3]
        assert all("correctAnswer" not in q for q in body["questions"])
        assert len(body["answers"]) == 3

    def test_autosave_then_refetch(
        self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
    ):
        attempt = self._generated_quiz(
            client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
        )
        question_id = client.get(f"/quizzes/{attempt.id}", headers=auth_headers).json()["questions"][0]["id"]

        r = client.patch(
            f"/quizzes/{attempt.id}/answers",
            json={"answers": [{"questionId": question_id, "answer": "Option D"}]},
            headers=auth_headers,
        )
        assert r.status_code == 200
        assert r.json() == {"saved": 1}

        answers = client.get(f"/quizzes/{attempt.id}", headers=auth_headers).json()["answers"]
        saved = next(a for a in answers if a["questionId"] == question_id)
        assert saved["userAnswer"] == "Option D"
        assert saved["answeredAt"] is not None

    def test_autosave_empty_body_400(
        self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
    ):
        attempt = self._generated_quiz(
            client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
        )
        r = client.patch(f"/quizzes/{attempt.id}/answers", json={"answers": []}, headers=auth_headers)
        assert r.status_code == 400
        assert r.json()["code"] == "VALIDATION_ERROR"

    def test_autosave_foreign_question_400(
        self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
    ):
        attempt = self._generated_quiz(
            client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
        )
        r = client.patch(
            f"/quizzes/{attempt.id}/answers",
            json={"answers": [{"questionId": "elsewhere", "answer": "x"}]},
            headers=auth_headers,
        )
        assert r.status_code == 400
        assert r.json()["details"] == {"questionIds": ["elsewhere"]}

    def test_foreign_user_403(
        self, client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
    ):
        attempt = self._generated_quiz(
            client, store, study_session, auth_headers, invoker_box, scripted_invoker, quiz_reply,
        )
        other = {"Authorization": f"Bearer {create_access_token({'sub': 'intruder'})}"}
        assert client.get(f"/quizzes/{attempt.id}", headers=other).status_code == 403

    def test_requires_token(self, client):
        assert client.get("/quizzes/q1").status_code == 401
        assert client.patch("/quizzes/q1/answers", json={"answers": []}).status_code == 401

    def test_unknown_quiz_404(self, client, auth_headers):
        assert client.get("/quizzes/nope", headers=auth_headers).status_code == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
