from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of identity roles."""

    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass
class User:
    id: str
    email: str
    display_name: str = ""
    role: Role = Role.STUDENT
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class UserCredential:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Course:
    id: str
    teacher_id: str
    title: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, teacher_id: str, title: str, description: Optional[str] = None
    ) -> "Course":
        return cls(
            id=str(uuid.uuid4()),
            teacher_id=teacher_id,
            title=title,
            description=description,
        )


@dataclass
class Enrollment:
    id: str
    student_id: str
    course_id: str
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        student_id: str,
        course_id: str,
        status: EnrollmentStatus = EnrollmentStatus.ACTIVE,
    ) -> "Enrollment":
        return cls(
            id=str(uuid.uuid4()),
            student_id=student_id,
            course_id=course_id,
            status=status,
        )
