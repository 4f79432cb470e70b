"""
Shared fixtures: a throwaway SQLite database, a fake essay evaluator and
caller headers for each role.
"""
import asyncio
import os
import tempfile

_tmpdir = tempfile.mkdtemp(prefix="cbt-tests-")
os.environ["CBT_DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmpdir}/cbt_test.db"
os.environ["CBT_EXPIRY_SWEEP_INTERVAL"] = "0"
os.environ.setdefault("CBT_LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from cbt.database import Base, engine
from cbt.main import app
from cbt.routers import get_evaluator
from cbt.schemas import EvaluationResponse

SCHOOL = "school-1"
CLASS = "JSS1"


class FakeEvaluator:
    """Stands in for the essay-evaluation service."""

    def __init__(self, score=7, feedback="Good answer", error=None):
        self.score = score
        self.feedback = feedback
        self.error = error
        self.calls = []

    async def evaluate(self, question, rubric_with_max_marks, student_answer):
        self.calls.append((question, rubric_with_max_marks, student_answer))
        if self.error is not None:
            raise self.error
        return EvaluationResponse(score=self.score, feedback=self.feedback, is_compliant=True)


def make_headers(user_id, role, school_id=SCHOOL, class_id=None, chief_admin=False):
    headers = {"X-User-Id": user_id, "X-User-Role": role}
    if school_id is not None:
        headers["X-School-Id"] = school_id
    if class_id is not None:
        headers["X-Class-Id"] = class_id
    if chief_admin:
        headers["X-Chief-Admin"] = "true"
    return headers


async def _reset_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def reset_db():
    run(_reset_db())
    yield


@pytest.fixture
def fake_evaluator():
    return FakeEvaluator()


@pytest.fixture
def client(fake_evaluator):
    app.dependency_overrides[get_evaluator] = lambda: fake_evaluator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return make_headers("admin-1", "Admin")


@pytest.fixture
def chief_admin_headers():
    return make_headers("admin-0", "Admin", chief_admin=True)


@pytest.fixture
def staff_headers():
    return make_headers("staff-1", "Staff")


@pytest.fixture
def other_staff_headers():
    return make_headers("staff-2", "Staff")


@pytest.fixture
def student_headers():
    return make_headers("student-1", "Student", class_id=CLASS)


@pytest.fixture
def other_student_headers():
    return make_headers("student-2", "Student", class_id=CLASS)


@pytest.fixture
def test_payload():
    """Exam with a 2-mark objective question (answer B) and a 10-mark essay."""
    return {
        "school_id": SCHOOL,
        "class_id": CLASS,
        "subject": "Mathematics",
        "title": "Second term examination",
        "category": "Exam",
        "duration_minutes": 30,
        "objective_questions": [
            {"prompt": "2 + 2 = ?", "options": ["3", "B", "5", "6"], "correct_option": "B", "marks": 2},
        ],
        "essay_questions": [
            {"prompt": "Explain place value.", "rubric_text": "Mentions tens and units.", "marks": 10},
        ],
    }


@pytest.fixture
def created_test(client, staff_headers, test_payload):
    response = client.post("/tests", json=test_payload, headers=staff_headers)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def open_test(client, admin_headers, created_test):
    response = client.put(f"/tests/{created_test['id']}/status", json={"status": "Open"}, headers=admin_headers)
    assert response.status_code == 200
    return response.json()
