import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from cbt import models
from cbt.scoring import ScoreSheet

logger = logging.getLogger(__name__)


async def get_test_by_id(db: AsyncSession, test_id: int):
    result = await db.execute(
        select(models.Test).filter(models.Test.id == test_id)
    )
    return result.scalar_one_or_none()


async def get_tests(db: AsyncSession, school_id: Optional[str] = None, created_by: Optional[str] = None):
    query = select(models.Test).order_by(models.Test.created_at.desc(), models.Test.id.desc())
    if school_id is not None:
        query = query.where(models.Test.school_id == school_id)
    if created_by is not None:
        query = query.where(models.Test.created_by == created_by)
    result = await db.execute(query)
    return result.scalars().all()


async def save_test(test: models.Test, db: AsyncSession):
    db.add(test)
    await db.commit()
    await db.refresh(test)
    return test


async def update_test(test: models.Test, updated_data: dict, db: AsyncSession):
    # Update only fields that exist in the model
    for key, value in updated_data.items():
        if hasattr(test, key):
            setattr(test, key, value)

    await db.commit()
    await db.refresh(test)
    return test


async def count_attempts(db: AsyncSession, test_id: int) -> int:
    result = await db.execute(
        select(func.count()).select_from(models.Attempt).where(models.Attempt.test_id == test_id)
    )
    return result.scalar()


async def get_attempt(db: AsyncSession, test_id: int, student_id: str):
    result = await db.execute(
        select(models.Attempt).where(
            models.Attempt.test_id == test_id,
            models.Attempt.student_id == student_id,
        ).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_attempt_by_id(db: AsyncSession, attempt_id: int):
    return await db.get(models.Attempt, attempt_id, populate_existing=True)


async def get_attempts_for_test(db: AsyncSession, test_id: int):
    result = await db.execute(
        select(models.Attempt)
        .where(models.Attempt.test_id == test_id)
        .order_by(models.Attempt.student_id)
    )
    return result.scalars().all()


async def create_attempt(db: AsyncSession, test_id: int, student_id: str, start_time: datetime):
    """
    Insert the attempt row. If a concurrent request already inserted it, the
    unique (test_id, student_id) constraint fires and the stored row wins.
    """
    attempt = models.Attempt(test_id=test_id, student_id=student_id, start_time=start_time)
    db.add(attempt)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        logger.info(f"Attempt for test {test_id} / student {student_id} already created by another request")
        return await get_attempt(db, test_id, student_id)
    await db.refresh(attempt)
    return attempt


async def freeze_answers(db: AsyncSession, attempt_id: int, objective_answers: dict, essay_answers: dict,
                         submitted_time: datetime, forced: bool) -> bool:
    """
    Record the raw answers and submission time, only if the attempt has not
    been submitted yet. Returns False when another submission got there first.
    """
    result = await db.execute(
        update(models.Attempt)
        .where(models.Attempt.id == attempt_id, models.Attempt.submitted_time.is_(None))
        .values(
            objective_answers=objective_answers,
            essay_answers=essay_answers,
            submitted_time=submitted_time,
            forced=forced,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def record_scores(db: AsyncSession, attempt_id: int, sheet: ScoreSheet, scored_time: datetime) -> bool:
    # All score components go out in a single UPDATE
    result = await db.execute(
        update(models.Attempt)
        .where(models.Attempt.id == attempt_id, models.Attempt.scored_time.is_(None))
        .values(
            objective_score=sheet.objective_score,
            essay_results={qid: r.model_dump() for qid, r in sheet.essay_results.items()},
            final_percentage=sheet.final_percentage,
            scored_time=scored_time,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def get_unsubmitted_attempts(db: AsyncSession) -> List[Tuple[models.Attempt, models.Test]]:
    result = await db.execute(
        select(models.Attempt, models.Test)
        .join(models.Test, models.Test.id == models.Attempt.test_id)
        .where(models.Attempt.submitted_time.is_(None))
        .execution_options(populate_existing=True)
    )
    return result.all()


async def get_unscored_attempts(db: AsyncSession) -> List[Tuple[models.Attempt, models.Test]]:
    result = await db.execute(
        select(models.Attempt, models.Test)
        .join(models.Test, models.Test.id == models.Attempt.test_id)
        .where(models.Attempt.submitted_time.is_not(None), models.Attempt.scored_time.is_(None))
        .execution_options(populate_existing=True)
    )
    return result.all()


async def get_grades_for_student(db: AsyncSession, student_id: str):
    result = await db.execute(
        select(models.Grade)
        .where(models.Grade.student_id == student_id)
        .order_by(models.Grade.subject)
    )
    return result.scalars().all()


async def get_grade(db: AsyncSession, student_id: str, subject: str):
    result = await db.execute(
        select(models.Grade).where(
            models.Grade.student_id == student_id,
            models.Grade.subject == subject,
        )
    )
    return result.scalar_one_or_none()


async def save_grade(grade: models.Grade, db: AsyncSession):
    db.add(grade)
    await db.commit()
    return grade
