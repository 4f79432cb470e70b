"""
Results view for a student's attempt.

Scores are shown only when the attempt is scored and the test's results are
published; otherwise the student gets a pending view without any numbers.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cbt import access, auth, crud, models, schemas, scoring, timer
from cbt.auth import Caller
from cbt.lifecycle import get_test_or_404

logger = logging.getLogger(__name__)


def build_results_view(student_id: str, test: models.Test,
                       attempt: Optional[models.Attempt]) -> schemas.ResultsView:
    header = dict(test_id=test.id, title=test.title, subject=test.subject, category=test.category)
    if attempt is None:
        return schemas.ResultsView(status="not_attempted", **header)

    submitted_time = timer.as_utc(attempt.submitted_time) if attempt.submitted_time else None
    if not access.can_view_results(student_id, test, attempt) or attempt.scored_time is None:
        return schemas.ResultsView(status="pending", submitted_time=submitted_time, **header)

    essay_results = attempt.essay_results or {}
    essay_answers = attempt.essay_answers or {}
    essays = []
    for question in test.essay_questions or []:
        result = essay_results.get(question["id"], {})
        essays.append(schemas.EssayFeedback(
            question_id=question["id"],
            prompt=question["prompt"],
            marks=question["marks"],
            answer=essay_answers.get(question["id"]),
            score=result.get("score", 0),
            feedback=result.get("feedback", scoring.NO_ANSWER_FEEDBACK),
        ))

    return schemas.ResultsView(
        status="published",
        submitted_time=submitted_time,
        objective_score=attempt.objective_score or 0,
        objective_total=scoring.total_marks(test.objective_questions or []),
        essay_score=sum(essay.score for essay in essays),
        essay_total=scoring.total_marks(test.essay_questions or []),
        final_percentage=attempt.final_percentage,
        essays=essays,
        **header,
    )


async def get_results_view(db: AsyncSession, caller: Caller, test_id: int) -> schemas.ResultsView:
    auth.require_student(caller)
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    attempt = await crud.get_attempt(db, test.id, caller.user_id)
    view = build_results_view(caller.user_id, test, attempt)
    logger.debug(f"Results for test {test.id} / student {caller.user_id}: {view.status}")
    return view
