from __future__ import annotations

import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from edugate.logging import get_logger
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import (
    Course,
    Enrollment,
    EnrollmentStatus,
    Role,
    User,
    UserCredential,
)


class MemoryStore:
    """In-memory backing store for users, courses and enrollments.

    Used in tests and local development (``USE_MEMORY_STORE``). Nothing is
    persisted across restarts.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.courses: Dict[str, Course] = {}
        self.enrollments: Dict[str, Enrollment] = {}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # ------------------------------------------------------------------ users

    def create_user(
        self,
        email: str,
        display_name: str = "",
        *,
        role: Role = Role.STUDENT,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                display_name=display_name,
                role=Role(role),
                is_active=is_active,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = datetime.now(timezone.utc)
            return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = datetime.now(timezone.utc)
            return user

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            user.updated_at = datetime.now(timezone.utc)
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = UserCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # ---------------------------------------------------------------- courses

    def create_course(
        self, teacher_id: str, title: str, description: Optional[str] = None
    ) -> Course:
        with self._data_lock:
            if teacher_id not in self.users:
                raise ConstraintViolation(
                    "teacher not found", {"field": "teacher_id"}
                )
            course = Course.new(teacher_id, title, description)
            self.courses[course.id] = course
            return course

    def get_course(self, course_id: str) -> Optional[Course]:
        with self._data_lock:
            return self.courses.get(course_id)

    def update_course(
        self,
        course_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Course]:
        with self._data_lock:
            course = self.courses.get(course_id)
            if not course:
                return None
            if title is not None:
                course.title = title
            if description is not None:
                course.description = description
            course.updated_at = datetime.now(timezone.utc)
            return course

    def delete_course(self, course_id: str) -> bool:
        with self._data_lock:
            if course_id not in self.courses:
                return False
            self.courses.pop(course_id, None)
            for enrollment_id, enrollment in list(self.enrollments.items()):
                if enrollment.course_id == course_id:
                    self.enrollments.pop(enrollment_id, None)
            return True

    def is_course_owner(self, course_id: str, user_id: str) -> bool:
        with self._data_lock:
            course = self.courses.get(course_id)
            return bool(course and course.teacher_id == user_id)

    # ------------------------------------------------------------ enrollments

    def create_enrollment(
        self,
        student_id: str,
        course_id: str,
        status: EnrollmentStatus = EnrollmentStatus.ACTIVE,
    ) -> Enrollment:
        with self._data_lock:
            if course_id not in self.courses:
                raise ConstraintViolation("course not found", {"field": "course_id"})
            for existing in self.enrollments.values():
                if existing.student_id == student_id and existing.course_id == course_id:
                    raise ConstraintViolation(
                        "already enrolled", {"field": "course_id"}
                    )
            enrollment = Enrollment.new(student_id, course_id, EnrollmentStatus(status))
            self.enrollments[enrollment.id] = enrollment
            return enrollment

    def set_enrollment_status(
        self, enrollment_id: str, status: EnrollmentStatus
    ) -> Optional[Enrollment]:
        with self._data_lock:
            enrollment = self.enrollments.get(enrollment_id)
            if not enrollment:
                return None
            enrollment.status = EnrollmentStatus(status)
            return enrollment

    def list_enrollments(self, course_id: str) -> List[Enrollment]:
        with self._data_lock:
            results = [
                e for e in self.enrollments.values() if e.course_id == course_id
            ]
            return sorted(results, key=lambda e: e.created_at)

    def has_active_enrollment(self, course_id: str, user_id: str) -> bool:
        with self._data_lock:
            return any(
                e.course_id == course_id
                and e.student_id == user_id
                and e.status == EnrollmentStatus.ACTIVE
                for e in self.enrollments.values()
            )

    def close(self) -> None:
        """No-op; present so the runtime can close any store uniformly."""


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache`.

    Entries carry an absolute monotonic deadline and are evicted lazily when
    read. Selected with ``USE_MEMORY_CACHE`` or in ``TEST_MODE``.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, tuple[str, float]] = {}
        self._lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, deadline = entry
            if deadline <= self._clock():
                self._entries.pop(key, None)
                return None
            return value

    async def pop(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None or entry[1] <= self._clock():
                return None
            return entry[0]

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
