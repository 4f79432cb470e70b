"""
Caller identity and authorization rules.

Authentication happens upstream; the gateway forwards the verified identity
as X-User-* headers.
"""
import enum
from dataclasses import dataclass
from typing import Optional

from fastapi import Header

from cbt import models
from cbt.errors import Forbidden


class Role(str, enum.Enum):
    ADMIN = "Admin"
    STAFF = "Staff"
    STUDENT = "Student"
    PARENT = "Parent"


@dataclass(frozen=True)
class Caller:
    user_id: str
    role: Role
    is_chief_admin: bool = False
    school_id: Optional[str] = None
    class_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role == Role.STAFF

    @property
    def is_student(self) -> bool:
        return self.role == Role.STUDENT


async def get_caller(
    x_user_id: str = Header(..., description="Authenticated user id"),
    x_user_role: Role = Header(..., description="Admin, Staff, Student or Parent"),
    x_chief_admin: bool = Header(default=False),
    x_school_id: Optional[str] = Header(default=None),
    x_class_id: Optional[str] = Header(default=None),
) -> Caller:
    return Caller(
        user_id=x_user_id,
        role=x_user_role,
        is_chief_admin=x_chief_admin,
        school_id=x_school_id,
        class_id=x_class_id,
    )


def role(caller: Caller) -> Role:
    return caller.role


def owns_test(caller: Caller, test: models.Test) -> bool:
    return test.created_by == caller.user_id


def can_edit_test(caller: Caller, test: models.Test) -> bool:
    """Admins edit any test, staff only the ones they authored."""
    if caller.is_admin:
        return True
    return caller.is_staff and owns_test(caller, test)


def require_author_role(caller: Caller):
    if not (caller.is_admin or caller.is_staff):
        raise Forbidden("Only staff and admins can manage tests")


def require_same_school(caller: Caller, test: models.Test):
    if caller.school_id is not None and caller.school_id != test.school_id:
        raise Forbidden("Test belongs to another school")


def require_editor(caller: Caller, test: models.Test):
    if not can_edit_test(caller, test):
        raise Forbidden("You are not allowed to modify this test")


def require_admin(caller: Caller, *, publication: bool = False, chief_admin_gate: bool = False):
    if not caller.is_admin:
        raise Forbidden("Only admins can change test status or publication")
    if publication and chief_admin_gate and not caller.is_chief_admin:
        raise Forbidden("Only the chief admin can publish results")


def require_student(caller: Caller):
    if not caller.is_student:
        raise Forbidden("Only students can take tests")
