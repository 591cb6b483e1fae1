from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from edugate.logging import get_logger
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import (
    Course,
    Enrollment,
    EnrollmentStatus,
    Role,
    User,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'student',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS course (
        id UUID PRIMARY KEY,
        teacher_id UUID NOT NULL REFERENCES app_user(id),
        title TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS enrollment (
        id UUID PRIMARY KEY,
        student_id UUID NOT NULL REFERENCES app_user(id),
        course_id UUID NOT NULL REFERENCES course(id) ON DELETE CASCADE,
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (student_id, course_id)
    )
    """,
)


class PostgresStore:
    """Thin Postgres-backed store for users, credentials, courses and enrollments."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the tables this store reads and writes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        now = datetime.now(timezone.utc)
        return User(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name") or "",
            role=Role(row.get("role", Role.STUDENT.value)),
            is_active=row.get("is_active", True),
            is_verified=row.get("is_verified", False),
            created_at=row.get("created_at", now),
            updated_at=row.get("updated_at", now),
        )

    @staticmethod
    def _row_to_course(row: dict[str, Any]) -> Course:
        now = datetime.now(timezone.utc)
        return Course(
            id=str(row["id"]),
            teacher_id=str(row["teacher_id"]),
            title=row["title"],
            description=row.get("description"),
            created_at=row.get("created_at", now),
            updated_at=row.get("updated_at", now),
        )

    @staticmethod
    def _row_to_enrollment(row: dict[str, Any]) -> Enrollment:
        return Enrollment(
            id=str(row["id"]),
            student_id=str(row["student_id"]),
            course_id=str(row["course_id"]),
            status=EnrollmentStatus(row.get("status", EnrollmentStatus.ACTIVE.value)),
            created_at=row.get("created_at", datetime.now(timezone.utc)),
        )

    # users
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
        role = Role(role)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, display_name, role, is_active, is_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        display_name,
                        role.value,
                        is_active,
                        is_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING *",
                (Role(role).value, user_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        if not self._is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_active = %s, updated_at = now() WHERE id = %s RETURNING *",
                (is_active, user_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_verified = TRUE, updated_at = now() WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # courses
    def create_course(
        self, teacher_id: str, title: str, description: Optional[str] = None
    ) -> Course:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO course (id, teacher_id, title, description)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), teacher_id, title, description),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("teacher not found", {"field": "teacher_id"})
        return self._row_to_course(row)

    def get_course(self, course_id: str) -> Optional[Course]:
        if not self._is_uuid(course_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM course WHERE id = %s", (course_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_course(row)

    def update_course(
        self,
        course_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Course]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE course
                SET title = COALESCE(%s, title),
                    description = COALESCE(%s, description),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (title, description, course_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_course(row)

    def delete_course(self, course_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM course WHERE id = %s RETURNING id", (course_id,)
            ).fetchone()
        return row is not None

    def is_course_owner(self, course_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM course WHERE id = %s AND teacher_id = %s",
                (course_id, user_id),
            ).fetchone()
        return row is not None

    # enrollments
    def create_enrollment(
        self,
        student_id: str,
        course_id: str,
        status: EnrollmentStatus = EnrollmentStatus.ACTIVE,
    ) -> Enrollment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO enrollment (id, student_id, course_id, status)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        student_id,
                        course_id,
                        EnrollmentStatus(status).value,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("already enrolled", {"field": "course_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("course not found", {"field": "course_id"})
        return self._row_to_enrollment(row)

    def set_enrollment_status(
        self, enrollment_id: str, status: EnrollmentStatus
    ) -> Optional[Enrollment]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE enrollment SET status = %s WHERE id = %s RETURNING *",
                (EnrollmentStatus(status).value, enrollment_id),
            ).fetchone()
        if not row:
            return None
        return self._row_to_enrollment(row)

    def list_enrollments(self, course_id: str) -> List[Enrollment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM enrollment WHERE course_id = %s ORDER BY created_at",
                (course_id,),
            ).fetchall()
        return [self._row_to_enrollment(row) for row in rows]

    def has_active_enrollment(self, course_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM enrollment WHERE course_id = %s AND student_id = %s AND status = %s",
                (course_id, user_id, EnrollmentStatus.ACTIVE.value),
            ).fetchone()
        return row is not None
