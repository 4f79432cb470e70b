import enum

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, JSON, String, UniqueConstraint
from sqlalchemy.sql import func

from cbt.database import Base


class TestStatus(str, enum.Enum):
    DRAFT = "Draft"
    OPEN = "Open"
    CLOSED = "Closed"


class TestCategory(str, enum.Enum):
    FIRST_CA = "FirstCA"
    SECOND_CA = "SecondCA"
    EXAM = "Exam"


class Test(Base):
    __tablename__ = 'cbt_tests'

    id = Column(Integer, primary_key=True, index=True)

    school_id = Column(String(64), nullable=False, index=True)
    class_id = Column(String(64), nullable=False, index=True)
    subject = Column(String(120), nullable=False)
    title = Column(String(200), nullable=False)

    # User id of the staff member or admin who authored the test
    created_by = Column(String(64), nullable=False)

    category = Column(String(16), nullable=False, default=TestCategory.FIRST_CA.value)
    duration_minutes = Column(Integer, nullable=False)

    objective_questions = Column(
        JSON,
        nullable=False,
        default=list,
        comment="[{'id': 'q0', 'prompt': ..., 'options': [...], 'correct_option': ..., 'marks': 1}, ...]"
    )
    essay_questions = Column(
        JSON,
        nullable=False,
        default=list,
        comment="[{'id': 'e0', 'prompt': ..., 'rubric_text': ..., 'marks': 10}, ...]"
    )

    status = Column(String(10), nullable=False, default=TestStatus.DRAFT.value)
    restricted_student_ids = Column(JSON, nullable=False, default=list)
    results_published = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Attempt(Base):
    __tablename__ = 'cbt_attempts'
    __table_args__ = (
        UniqueConstraint('test_id', 'student_id', name='uq_attempt_test_student'),
    )

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(Integer, nullable=False, index=True)
    student_id = Column(String(64), nullable=False, index=True)

    # Anchors the deadline; written once at creation
    start_time = Column(DateTime(timezone=True), nullable=False)
    submitted_time = Column(DateTime(timezone=True), nullable=True)
    forced = Column(Boolean, nullable=False, default=False)

    objective_answers = Column(JSON, nullable=True, comment="{'q0': 'B', ...}")
    essay_answers = Column(JSON, nullable=True, comment="{'e0': 'free text', ...}")

    objective_score = Column(Float, nullable=True)
    essay_results = Column(
        JSON,
        nullable=True,
        comment="{'e0': {'score': 7, 'feedback': ..., 'needs_review': false, 'is_compliant': true}}"
    )
    final_percentage = Column(Float, nullable=True)
    scored_time = Column(DateTime(timezone=True), nullable=True)


class Grade(Base):
    __tablename__ = 'gradebook'
    __table_args__ = (
        UniqueConstraint('student_id', 'subject', name='uq_grade_student_subject'),
    )

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(String(64), nullable=False, index=True)
    subject = Column(String(120), nullable=False)

    first_ca = Column(Float, nullable=True)
    second_ca = Column(Float, nullable=True)
    project = Column(Float, nullable=True)
    exam = Column(Float, nullable=True)
