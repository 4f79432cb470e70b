"""
Tests for attempts: begin, submit, forced expiry and results.
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import testclient
from sqlalchemy.exc import SQLAlchemyError

from conftest import FakeEvaluator, make_headers, run

from cbt import attempts, crud, schemas
from cbt.auth import Caller, Role
from cbt.config import get_settings
from cbt.database import SessionLocal
from cbt.main import app
from cbt.scoring import NO_ANSWER_FEEDBACK, UNAVAILABLE_FEEDBACK

ANSWERS = {"objective_answers": {"q0": "B"}, "essay_answers": {"e0": "Tens and units."}}
STUDENT = Caller(user_id="student-1", role=Role.STUDENT, school_id="school-1", class_id="JSS1")


async def _get_attempt(test_id, student_id="student-1"):
    async with SessionLocal() as db:
        return await crud.get_attempt(db, test_id, student_id)


async def _submit_at(test_id, payload, evaluator, now):
    async with SessionLocal() as db:
        return await attempts.submit_attempt(db, STUDENT, test_id, payload, evaluator, get_settings(), now=now)


async def _sweep(evaluator, now=None):
    return await attempts.sweep_expired_attempts(SessionLocal, evaluator, get_settings(), now=now)


async def _freeze_unscored(attempt_id, submitted_time):
    async with SessionLocal() as db:
        return await crud.freeze_answers(db, attempt_id, {"q0": "B"}, {}, submitted_time, False)


def publish(client, admin_headers, test_id):
    response = client.put(f"/tests/{test_id}/publication", json={"results_published": True}, headers=admin_headers)
    assert response.status_code == 200


class TestBeginAttempt:
    """Tests for POST /tests/{id}/attempts."""

    def test_begin_returns_timer_state(self, client, student_headers, open_test):
        response = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["student_id"] == "student-1"
        assert data["submitted"] is False
        assert 0 < data["remaining_seconds"] <= 30 * 60

    def test_begin_twice_keeps_start_time(self, client, student_headers, open_test):
        first = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers).json()
        second = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers).json()

        assert second["attempt_id"] == first["attempt_id"]
        assert second["start_time"] == first["start_time"]
        assert second["deadline"] == first["deadline"]

    def test_draft_test_cannot_begin(self, client, student_headers, created_test):
        response = client.post(f"/tests/{created_test['id']}/attempts", headers=student_headers)
        assert response.status_code == 403

    def test_closed_test_cannot_begin(self, client, admin_headers, student_headers, open_test):
        client.put(f"/tests/{open_test['id']}/status", json={"status": "Closed"}, headers=admin_headers)

        response = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        assert response.status_code == 403

    def test_restricted_student_cannot_begin(self, client, staff_headers, student_headers, open_test):
        client.put(f"/tests/{open_test['id']}/restrictions", json={"student_ids": ["student-1"]},
                   headers=staff_headers)

        response = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        assert response.status_code == 403
        assert run(_get_attempt(open_test["id"])) is None

    def test_staff_cannot_begin(self, client, staff_headers, open_test):
        response = client.post(f"/tests/{open_test['id']}/attempts", headers=staff_headers)
        assert response.status_code == 403

    def test_cannot_begin_after_submission(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)

        response = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        assert response.status_code == 403


class TestSubmitAttempt:
    """Tests for POST /tests/{id}/attempts/submit."""

    def test_submit_without_attempt(self, client, student_headers, open_test):
        response = client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)
        assert response.status_code == 404

    def test_submit_scores_attempt(self, client, student_headers, open_test, fake_evaluator):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        response = client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Answers submitted successfully"
        assert data["forced"] is False
        assert data["already_submitted"] is False

        attempt = run(_get_attempt(open_test["id"]))
        assert attempt.objective_score == 2
        assert attempt.essay_results["e0"]["score"] == 7
        assert attempt.final_percentage == 75.0
        assert attempt.scored_time is not None
        assert len(fake_evaluator.calls) == 1

    def test_submit_twice_scores_once(self, client, student_headers, open_test, fake_evaluator):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        url = f"/tests/{open_test['id']}/attempts/submit"
        first = client.post(url, json=ANSWERS, headers=student_headers).json()

        second = client.post(url, json={"objective_answers": {"q0": "3"}}, headers=student_headers)

        assert second.status_code == 200
        assert second.json()["already_submitted"] is True
        assert second.json()["submitted_time"] == first["submitted_time"]
        assert len(fake_evaluator.calls) == 1

        attempt = run(_get_attempt(open_test["id"]))
        assert attempt.objective_answers == {"q0": "B"}
        assert attempt.final_percentage == 75.0

    def test_evaluator_failure_still_submits(self, client, student_headers, open_test, fake_evaluator):
        fake_evaluator.error = RuntimeError("evaluator down")
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)

        response = client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Answers submitted successfully"
        attempt = run(_get_attempt(open_test["id"]))
        assert attempt.essay_results["e0"]["feedback"] == UNAVAILABLE_FEEDBACK
        assert attempt.essay_results["e0"]["needs_review"] is True
        assert attempt.final_percentage == 16.67

    def test_blank_essay_is_not_sent_for_grading(self, client, student_headers, open_test, fake_evaluator):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        payload = {"objective_answers": {"q0": "B"}, "essay_answers": {"e0": "  "}}
        client.post(f"/tests/{open_test['id']}/attempts/submit", json=payload, headers=student_headers)

        attempt = run(_get_attempt(open_test["id"]))
        assert fake_evaluator.calls == []
        assert attempt.essay_results["e0"]["feedback"] == NO_ANSWER_FEEDBACK

    def test_client_forced_submission_keeps_answers(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        payload = dict(ANSWERS, forced=True)
        response = client.post(f"/tests/{open_test['id']}/attempts/submit", json=payload, headers=student_headers)

        assert response.json()["forced"] is True
        assert run(_get_attempt(open_test["id"])).objective_answers == {"q0": "B"}

    def test_late_answers_are_discarded(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        late = datetime.now(timezone.utc) + timedelta(minutes=31)

        attempt, already_submitted = run(_submit_at(
            open_test["id"], schemas.SubmitAnswersRequest(**ANSWERS), FakeEvaluator(), late))

        assert already_submitted is False
        assert attempt.forced is True
        assert attempt.objective_answers == {}
        assert attempt.final_percentage == 0

    def test_answers_within_grace_are_kept(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        start = run(_get_attempt(open_test["id"])).start_time.replace(tzinfo=timezone.utc)
        just_after_deadline = start + timedelta(minutes=30, seconds=5)

        attempt, _ = run(_submit_at(
            open_test["id"], schemas.SubmitAnswersRequest(**ANSWERS), FakeEvaluator(), just_after_deadline))

        assert attempt.forced is False
        assert attempt.final_percentage == 75.0


class TestExpirySweep:
    def test_overdue_attempt_is_force_submitted(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        evaluator = FakeEvaluator()

        forced = run(_sweep(evaluator, now=datetime.now(timezone.utc) + timedelta(hours=1)))

        assert forced == 1
        attempt = run(_get_attempt(open_test["id"]))
        assert attempt.forced is True
        assert attempt.submitted_time is not None
        assert attempt.final_percentage == 0
        assert evaluator.calls == []

        response = client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)
        assert response.json()["already_submitted"] is True

    def test_running_attempt_is_left_alone(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)

        assert run(_sweep(FakeEvaluator())) == 0
        assert run(_get_attempt(open_test["id"])).submitted_time is None

    def test_interrupted_scoring_is_completed(self, client, student_headers, open_test):
        session = client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers).json()
        submitted = datetime.now(timezone.utc) - timedelta(minutes=10)
        assert run(_freeze_unscored(session["attempt_id"], submitted)) is True

        run(_sweep(FakeEvaluator()))

        attempt = run(_get_attempt(open_test["id"]))
        assert attempt.scored_time is not None
        assert attempt.final_percentage == round(2 / 12 * 100, 2)


class TestResults:
    """Tests for GET /tests/{id}/results."""

    def test_not_attempted(self, client, student_headers, open_test):
        response = client.get(f"/tests/{open_test['id']}/results", headers=student_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "not_attempted"

    def test_pending_until_published(self, client, admin_headers, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)

        data = client.get(f"/tests/{open_test['id']}/results", headers=student_headers).json()
        assert data["status"] == "pending"
        assert data["final_percentage"] is None
        assert data["essays"] == []

        publish(client, admin_headers, open_test["id"])

        data = client.get(f"/tests/{open_test['id']}/results", headers=student_headers).json()
        assert data["status"] == "published"
        assert data["objective_score"] == 2
        assert data["objective_total"] == 2
        assert data["essay_score"] == 7
        assert data["essay_total"] == 10
        assert data["final_percentage"] == 75.0
        assert data["essays"][0]["answer"] == "Tens and units."
        assert data["essays"][0]["feedback"] == "Good answer"

    def test_results_are_per_student(self, client, admin_headers, student_headers, other_student_headers,
                                     open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=student_headers)
        publish(client, admin_headers, open_test["id"])

        response = client.get(f"/tests/{open_test['id']}/results", headers=other_student_headers)
        assert response.json()["status"] == "not_attempted"

    def test_staff_use_export_instead(self, client, staff_headers, open_test):
        response = client.get(f"/tests/{open_test['id']}/results", headers=staff_headers)
        assert response.status_code == 403

    def test_unknown_test(self, client):
        response = client.get("/tests/424242/results", headers=make_headers("student-1", "Student"))
        assert response.status_code == 404


class TestSchoolScoping:
    """A caller from another school never reaches another school's attempts."""

    def test_cannot_begin(self, client, staff_headers, open_test, test_payload):
        outsider = make_headers("student-9", "Student", school_id="school-2", class_id="JSS1")

        response = client.post(f"/tests/{open_test['id']}/attempts", headers=outsider)
        assert response.status_code == 403
        assert run(_get_attempt(open_test["id"], "student-9")) is None

        # no stray attempt, so the owner can still change the questions
        essays = [dict(test_payload["essay_questions"][0], marks=12)]
        response = client.put(f"/tests/{open_test['id']}", json={"essay_questions": essays}, headers=staff_headers)
        assert response.status_code == 200

    def test_cannot_submit(self, client, open_test):
        outsider = make_headers("student-9", "Student", school_id="school-2", class_id="JSS1")
        response = client.post(f"/tests/{open_test['id']}/attempts/submit", json=ANSWERS, headers=outsider)
        assert response.status_code == 403

    def test_cannot_read_results(self, client, open_test):
        outsider = make_headers("student-9", "Student", school_id="school-2", class_id="JSS1")
        response = client.get(f"/tests/{open_test['id']}/results", headers=outsider)
        assert response.status_code == 403


class TestAttemptStorage:
    def test_begin_fails_closed_when_attempt_cannot_be_stored(self, client, student_headers, open_test,
                                                             monkeypatch):
        async def broken_create_attempt(db, test_id, student_id, start_time):
            raise SQLAlchemyError("database unavailable")

        monkeypatch.setattr(crud, "create_attempt", broken_create_attempt)
        failing_client = testclient.TestClient(app, raise_server_exceptions=False)

        response = failing_client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)

        assert response.status_code == 500
        assert run(_get_attempt(open_test["id"])) is None

    def test_double_create_resolves_to_stored_row(self, open_test):
        first_start = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

        async def create_twice():
            async with SessionLocal() as db:
                first = await crud.create_attempt(db, open_test["id"], "student-1", first_start)
            async with SessionLocal() as db:
                second = await crud.create_attempt(db, open_test["id"], "student-1",
                                                   first_start + timedelta(minutes=3))
            return first, second

        first, second = run(create_twice())

        assert second.id == first.id
        assert second.start_time.replace(tzinfo=timezone.utc) == first_start

    def test_concurrent_submissions_score_once(self, client, student_headers, open_test):
        client.post(f"/tests/{open_test['id']}/attempts", headers=student_headers)
        evaluator = FakeEvaluator()
        payload = schemas.SubmitAnswersRequest(**ANSWERS)

        async def submit_twice():
            return await asyncio.gather(
                _submit_at(open_test["id"], payload, evaluator, None),
                _submit_at(open_test["id"], payload, evaluator, None),
            )

        outcomes = run(submit_twice())

        assert sorted(already for _, already in outcomes) == [False, True]
        assert len(evaluator.calls) == 1
        assert run(_get_attempt(open_test["id"])).final_percentage == 75.0


class TestExpirySweeper:
    def test_keeps_running_after_unexpected_error(self, monkeypatch):
        calls = []

        async def flaky_sweep(session_factory, evaluator, settings):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("evaluator client misconfigured")
            raise asyncio.CancelledError()

        monkeypatch.setattr(attempts, "sweep_expired_attempts", flaky_sweep)

        with pytest.raises(asyncio.CancelledError):
            run(attempts.run_expiry_sweeper(SessionLocal, FakeEvaluator(), get_settings()))

        assert len(calls) == 2
