"""
Gradebook merge for published CBT results.

A CBT result only fills an empty category slot, so a grade entered by hand
is never overwritten by a CBT score.
"""
import copy
import logging
from typing import Dict, Iterable, List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cbt import crud, models
from cbt.auth import Caller
from cbt.errors import Forbidden
from cbt.models import TestCategory
from cbt.scoring import attempt_raw_fraction, category_scaled_score

logger = logging.getLogger(__name__)

SLOT_FOR_CATEGORY = {
    TestCategory.FIRST_CA.value: "first_ca",
    TestCategory.SECOND_CA.value: "second_ca",
    TestCategory.EXAM.value: "exam",
}


async def merge_into_gradebook(db: AsyncSession, student_id: str, subject: str, category: str,
                               scaled_score: float) -> bool:
    """Upsert the (student, subject) row; returns True if the slot was filled."""
    slot = SLOT_FOR_CATEGORY[TestCategory(category).value]

    for _ in range(2):
        grade = await crud.get_grade(db, student_id, subject)
        if grade is None:
            grade = models.Grade(student_id=student_id, subject=subject)
        elif getattr(grade, slot) is not None:
            logger.debug(f"Gradebook {student_id}/{subject}.{slot} already set, keeping it")
            return False

        setattr(grade, slot, scaled_score)
        try:
            await crud.save_grade(grade, db)
        except IntegrityError:
            # row created concurrently; read it back and try once more
            await db.rollback()
            continue
        logger.info(f"Gradebook {student_id}/{subject}.{slot} <- {scaled_score:.2f}")
        return True

    return False


async def merge_attempt(db: AsyncSession, test: models.Test, attempt: models.Attempt) -> bool:
    if attempt.scored_time is None:
        return False
    score = category_scaled_score(test.category, attempt_raw_fraction(test, attempt))
    return await merge_into_gradebook(db, attempt.student_id, test.subject, test.category, score)


async def merge_test_results(db: AsyncSession, test: models.Test) -> int:
    """Push every scored attempt of a published test into the gradebook."""
    test_id, subject, category = test.id, test.subject, test.category
    # read everything up front; a retried insert rolls back and expires loaded rows
    scores = [
        (attempt.student_id, category_scaled_score(category, attempt_raw_fraction(test, attempt)))
        for attempt in await crud.get_attempts_for_test(db, test_id)
        if attempt.scored_time is not None
    ]
    merged = 0
    for student_id, score in scores:
        if await merge_into_gradebook(db, student_id, subject, category, score):
            merged += 1
    logger.info(f"Test {test_id}: merged {merged} result(s) into the gradebook")
    return merged


def merged_grades(grades: List[dict], attempts: Iterable[models.Attempt],
                  tests: Dict[int, models.Test]) -> List[dict]:
    """
    In-memory version of the merge: overlay published CBT results on a copy
    of a student's grade rows without touching the stored gradebook.
    """
    merged = copy.deepcopy(grades)
    for attempt in attempts:
        test = tests.get(attempt.test_id)
        if test is None or not test.results_published or attempt.scored_time is None:
            continue

        grade = next((g for g in merged if g["subject"] == test.subject), None)
        if grade is None:
            grade = {"subject": test.subject, "first_ca": None, "second_ca": None, "project": None, "exam": None}
            merged.append(grade)

        slot = SLOT_FOR_CATEGORY[test.category]
        if grade.get(slot) is None:
            grade[slot] = category_scaled_score(test.category, attempt_raw_fraction(test, attempt))
    return merged


async def get_gradebook(db: AsyncSession, caller: Caller, student_id: str) -> List[models.Grade]:
    if not (caller.is_admin or caller.is_staff or caller.user_id == student_id):
        raise Forbidden("You cannot view this student's grades")
    return list(await crud.get_grades_for_student(db, student_id))
