"""
Test definitions and their lifecycle.

Status moves freely between Draft, Open and Closed at an admin's request.
results_published is a separate flag. Once a test has attempts its question
set is frozen so stored answers keep pointing at the questions they answered.
"""
import logging
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cbt import auth, crud, gradebook, models, schemas
from cbt.access import is_listed_for_student, is_restricted
from cbt.auth import Caller
from cbt.config import Settings
from cbt.errors import Forbidden, NotFound, TestLocked
from cbt.models import TestStatus

logger = logging.getLogger(__name__)

QUESTION_FIELDS = ("objective_questions", "essay_questions")


def _question_dicts(questions, prefix: str) -> List[dict]:
    result = []
    for i, question in enumerate(questions):
        data = question.model_dump()
        data["id"] = data.get("id") or f"{prefix}{i}"
        result.append(data)
    return result


async def get_test_or_404(db: AsyncSession, test_id: int) -> models.Test:
    test = await crud.get_test_by_id(db, test_id)
    if not test:
        raise NotFound("Test not found")
    return test


async def create_test(db: AsyncSession, caller: Caller, payload: schemas.TestCreate) -> models.Test:
    auth.require_author_role(caller)
    if caller.school_id is not None and caller.school_id != payload.school_id:
        raise Forbidden("Cannot create tests for another school")

    data = payload.model_dump(exclude={"category", *QUESTION_FIELDS})
    test = models.Test(
        **data,
        category=payload.category.value,
        created_by=caller.user_id,
        status=TestStatus.DRAFT.value,
        results_published=False,
        objective_questions=_question_dicts(payload.objective_questions, "q"),
        essay_questions=_question_dicts(payload.essay_questions, "e"),
    )
    test = await crud.save_test(test, db)
    logger.info(f"Test {test.id} '{test.title}' created by {caller.user_id} as draft")
    return test


async def update_test(db: AsyncSession, caller: Caller, test_id: int, patch: schemas.TestUpdate) -> models.Test:
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    auth.require_editor(caller, test)

    updated_data = patch.model_dump(exclude_unset=True, exclude=set(QUESTION_FIELDS))
    # None means "leave as is" for the plain fields
    updated_data = {key: value for key, value in updated_data.items() if value is not None}
    if "category" in updated_data:
        updated_data["category"] = updated_data["category"].value

    touches_questions = any(
        name in patch.model_fields_set and getattr(patch, name) is not None for name in QUESTION_FIELDS
    )
    if touches_questions:
        attempts = await crud.count_attempts(db, test.id)
        if attempts:
            raise TestLocked(f"Questions cannot be changed: {attempts} attempt(s) already exist")
        if patch.objective_questions is not None:
            updated_data["objective_questions"] = _question_dicts(patch.objective_questions, "q")
        if patch.essay_questions is not None:
            updated_data["essay_questions"] = _question_dicts(patch.essay_questions, "e")

    test = await crud.update_test(test, updated_data, db)
    logger.info(f"Test {test.id} updated by {caller.user_id}: {sorted(updated_data)}")
    return test


async def set_status(db: AsyncSession, caller: Caller, test_id: int, status: TestStatus) -> models.Test:
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    auth.require_admin(caller)

    previous = test.status
    test = await crud.update_test(test, {"status": TestStatus(status).value}, db)
    logger.info(f"Test {test.id} status {previous} -> {test.status} by {caller.user_id}")
    return test


async def set_results_published(db: AsyncSession, caller: Caller, test_id: int, published: bool,
                                settings: Settings) -> models.Test:
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    auth.require_admin(caller, publication=True,
                       chief_admin_gate=settings.require_chief_admin_for_publication)

    test = await crud.update_test(test, {"results_published": published}, db)
    logger.info(f"Test {test.id} results {'published' if published else 'hidden'} by {caller.user_id}")
    if published:
        await gradebook.merge_test_results(db, test)
        await db.refresh(test)
    return test


async def set_restricted_students(db: AsyncSession, caller: Caller, test_id: int,
                                  student_ids: List[str]) -> models.Test:
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    auth.require_editor(caller, test)

    unique_ids = list(dict.fromkeys(student_ids))
    test = await crud.update_test(test, {"restricted_student_ids": unique_ids}, db)
    logger.info(f"Test {test.id}: {len(unique_ids)} restricted student(s)")
    return test


async def list_tests(db: AsyncSession, caller: Caller, school_id: Optional[str] = None,
                     class_id: Optional[str] = None) -> List[models.Test]:
    school_id = caller.school_id or school_id
    if caller.is_admin:
        return list(await crud.get_tests(db, school_id=school_id))
    if caller.is_staff:
        return list(await crud.get_tests(db, school_id=school_id, created_by=caller.user_id))
    if caller.is_student:
        tests = await crud.get_tests(db, school_id=school_id)
        return [test for test in tests if is_listed_for_student(test, caller.class_id or class_id)]
    raise Forbidden("Parents cannot browse tests")


def student_view(test: models.Test) -> schemas.StudentTestView:
    return schemas.StudentTestView(
        id=test.id,
        subject=test.subject,
        title=test.title,
        category=test.category,
        duration_minutes=test.duration_minutes,
        status=test.status,
        results_published=test.results_published,
        objective_questions=[
            schemas.StudentObjectiveQuestion(id=q["id"], prompt=q["prompt"], options=q["options"], marks=q["marks"])
            for q in test.objective_questions or []
        ],
        essay_questions=[
            schemas.StudentEssayQuestion(id=q["id"], prompt=q["prompt"], marks=q["marks"])
            for q in test.essay_questions or []
        ],
    )


async def get_test_for_caller(db: AsyncSession, caller: Caller, test_id: int):
    """Full definition for editors, the redacted view for students who can see the test."""
    test = await get_test_or_404(db, test_id)
    auth.require_same_school(caller, test)
    if caller.is_student:
        if is_restricted(caller.user_id, test) or not is_listed_for_student(test, caller.class_id):
            raise Forbidden("This test is not available to you")
        return student_view(test)
    auth.require_editor(caller, test)
    return schemas.TestResponse.model_validate(test)
