"""
Access gate predicates.

Pure functions over the stored test and attempt, re-evaluated on every
request.
"""
from typing import Optional

from cbt import models
from cbt.models import TestStatus


def is_restricted(student_id: str, test: models.Test) -> bool:
    return student_id in (test.restricted_student_ids or [])


def can_start(student_id: str, test: models.Test, attempt: Optional[models.Attempt]) -> bool:
    # restriction wins over every other condition
    if is_restricted(student_id, test):
        return False
    return test.status == TestStatus.OPEN.value and attempt is None


def can_resume(student_id: str, test: models.Test, attempt: Optional[models.Attempt]) -> bool:
    """A reload mid-test: the attempt exists but has not been submitted."""
    if is_restricted(student_id, test) or attempt is None:
        return False
    return test.status == TestStatus.OPEN.value and attempt.submitted_time is None


def can_view_results(student_id: str, test: models.Test, attempt: Optional[models.Attempt]) -> bool:
    if attempt is None or attempt.student_id != student_id:
        return False
    return bool(test.results_published)


def is_listed_for_student(test: models.Test, class_id: Optional[str]) -> bool:
    """Tests a student sees on the CBT page: open ones, or closed with results out."""
    if class_id is not None and test.class_id != class_id:
        return False
    if test.status == TestStatus.OPEN.value:
        return True
    return test.status == TestStatus.CLOSED.value and bool(test.results_published)
