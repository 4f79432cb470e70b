from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cbt.models import TestCategory, TestStatus


class ObjectiveQuestion(BaseModel):
    """Multiple-choice question; answered correctly when the chosen option equals correct_option"""
    id: Optional[str] = Field(default=None, max_length=32, description="Defaults to q<index>")
    prompt: str = Field(..., min_length=1)
    options: List[str] = Field(..., min_length=2, max_length=5)
    correct_option: str
    marks: int = Field(default=1, ge=1)

    @field_validator('options')
    def options_not_blank(cls, value):
        if any(not option.strip() for option in value):
            raise ValueError("Option cannot be empty")
        return value

    @model_validator(mode='after')
    def correct_option_is_an_option(self):
        if self.correct_option not in self.options:
            raise ValueError("correct_option must be one of the options")
        return self


class EssayQuestion(BaseModel):
    id: Optional[str] = Field(default=None, max_length=32, description="Defaults to e<index>")
    prompt: str = Field(..., min_length=1)
    rubric_text: str = Field(..., min_length=1, description="Marking rubric or model answer")
    marks: int = Field(..., ge=1)


def _check_unique_ids(questions):
    ids = [q.id for q in questions or [] if q.id is not None]
    if len(ids) != len(set(ids)):
        raise ValueError("Question ids must be unique")
    return questions


class TestCreate(BaseModel):
    school_id: str = Field(..., max_length=64)
    class_id: str = Field(..., max_length=64)
    subject: str = Field(..., max_length=120)
    title: str = Field(..., min_length=1, max_length=200)
    category: TestCategory = TestCategory.FIRST_CA
    duration_minutes: int = Field(..., gt=0)
    objective_questions: List[ObjectiveQuestion] = Field(default_factory=list)
    essay_questions: List[EssayQuestion] = Field(default_factory=list)
    restricted_student_ids: List[str] = Field(default_factory=list)

    @field_validator('objective_questions', 'essay_questions')
    def question_ids_unique(cls, value):
        return _check_unique_ids(value)


class TestUpdate(BaseModel):
    class_id: Optional[str] = Field(default=None, max_length=64)
    subject: Optional[str] = Field(default=None, max_length=120)
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[TestCategory] = None
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    objective_questions: Optional[List[ObjectiveQuestion]] = None
    essay_questions: Optional[List[EssayQuestion]] = None
    restricted_student_ids: Optional[List[str]] = None

    @field_validator('objective_questions', 'essay_questions')
    def question_ids_unique(cls, value):
        return _check_unique_ids(value)


class StatusUpdate(BaseModel):
    status: TestStatus


class PublicationUpdate(BaseModel):
    results_published: bool


class RestrictionUpdate(BaseModel):
    student_ids: List[str]


class TestResponse(BaseModel):
    """Full test definition, answer keys included (staff and admin only)"""

    id: int
    school_id: str
    class_id: str
    subject: str
    title: str
    created_by: str
    category: TestCategory
    duration_minutes: int
    objective_questions: List[ObjectiveQuestion]
    essay_questions: List[EssayQuestion]
    status: TestStatus
    restricted_student_ids: List[str]
    results_published: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class StudentObjectiveQuestion(BaseModel):
    id: str
    prompt: str
    options: List[str]
    marks: int


class StudentEssayQuestion(BaseModel):
    id: str
    prompt: str
    marks: int


class StudentTestView(BaseModel):
    """Test as shown to a student: no correct options, no rubrics"""
    id: int
    subject: str
    title: str
    category: TestCategory
    duration_minutes: int
    status: TestStatus
    results_published: bool
    objective_questions: List[StudentObjectiveQuestion]
    essay_questions: List[StudentEssayQuestion]


class AttemptSession(BaseModel):
    attempt_id: int
    test_id: int
    student_id: str
    start_time: datetime
    deadline: datetime
    remaining_seconds: int
    server_time: datetime
    submitted: bool


class SubmitAnswersRequest(BaseModel):
    objective_answers: Dict[str, str] = Field(default_factory=dict)  # {"q0": "B", ...}
    essay_answers: Dict[str, str] = Field(default_factory=dict)      # {"e0": "text", ...}
    forced: bool = Field(default=False, description="Sent by the client countdown when it reaches zero")


class SubmitAnswersResponse(BaseModel):
    message: str
    attempt_id: int
    submitted_time: datetime
    forced: bool
    already_submitted: bool = False


class EssayResult(BaseModel):
    score: float
    feedback: str
    needs_review: bool = False
    is_compliant: Optional[bool] = None


class EssayFeedback(BaseModel):
    question_id: str
    prompt: str
    marks: int
    answer: Optional[str]
    score: float
    feedback: str


class ResultsView(BaseModel):
    status: Literal["published", "pending", "not_attempted"]
    test_id: int
    title: str
    subject: str
    category: TestCategory
    submitted_time: Optional[datetime] = None
    objective_score: Optional[float] = None
    objective_total: Optional[int] = None
    essay_score: Optional[float] = None
    essay_total: Optional[int] = None
    final_percentage: Optional[float] = None
    essays: List[EssayFeedback] = Field(default_factory=list)


class GradeResponse(BaseModel):
    student_id: str
    subject: str
    first_ca: Optional[float]
    second_ca: Optional[float]
    project: Optional[float]
    exam: Optional[float]

    model_config = ConfigDict(from_attributes=True)


class EvaluationRequest(BaseModel):
    """Request body of the essay-evaluation service"""
    question: str
    rubric_with_max_marks: str = Field(..., alias="rubricWithMaxMarks")
    student_answer: str = Field(..., alias="studentAnswer")

    model_config = ConfigDict(populate_by_name=True)


class EvaluationResponse(BaseModel):
    score: float
    feedback: str = ""
    is_compliant: bool = Field(default=True, alias="isCompliant")

    model_config = ConfigDict(populate_by_name=True)
