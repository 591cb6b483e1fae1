from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Protocol

from edugate.logging import get_logger
from edugate.service.auth import AuthContext
from edugate.service.errors import ForbiddenError, NotFoundError
from edugate.storage.models import Course, Enrollment, EnrollmentStatus, Role

logger = get_logger(__name__)


class Policy(str, Enum):
    OWN = "own"
    ENROLLED = "enrolled"
    ADMIN = "admin"
    PUBLIC = "public"


OWN_RESOURCE: FrozenSet[Policy] = frozenset({Policy.OWN, Policy.ADMIN})
ENROLLED_OR_OWN_RESOURCE: FrozenSet[Policy] = frozenset(
    {Policy.ENROLLED, Policy.OWN, Policy.ADMIN}
)
PUBLIC_RESOURCE: FrozenSet[Policy] = frozenset({Policy.PUBLIC, Policy.ADMIN})
ADMIN_RESOURCE: FrozenSet[Policy] = frozenset({Policy.ADMIN})

# Relationship policies are tried in this order once the admin override is ruled out.
# PUBLIC never reaches this point.
_EVALUATION_ORDER = (Policy.OWN, Policy.ENROLLED)


class ResourceDirectory(Protocol):
    def get_course(self, course_id: str) -> Optional[Course]: ...

    def is_course_owner(self, course_id: str, user_id: str) -> bool: ...

    def has_active_enrollment(self, course_id: str, user_id: str) -> bool: ...

    def create_course(
        self, teacher_id: str, title: str, description: Optional[str] = None
    ) -> Course: ...

    def update_course(
        self,
        course_id: str,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Course]: ...

    def delete_course(self, course_id: str) -> bool: ...

    def create_enrollment(
        self,
        student_id: str,
        course_id: str,
        status: EnrollmentStatus = EnrollmentStatus.ACTIVE,
    ) -> Enrollment: ...

    def list_enrollments(self, course_id: str) -> List[Enrollment]: ...


def _sorted(policies: Iterable[Policy]) -> List[str]:
    return sorted(Policy(p).value for p in policies)


class AccessResolver:
    """Decides whether an identity may act on a resource.

    An endpoint declares a set of policies and access is granted when any one
    of them holds. Relationship lookups hit the directory on every call so a
    revoked enrollment or transferred course takes effect immediately.
    """

    def __init__(self, directory: ResourceDirectory) -> None:
        self.directory = directory
        self._exists: Dict[str, Callable[[str], bool]] = {
            "course": lambda rid: self.directory.get_course(rid) is not None,
        }

    def _resource_exists(self, resource_type: str, resource_id: str) -> bool:
        check = self._exists.get(resource_type)
        if check is None:
            raise ValueError(f"unsupported resource type: {resource_type}")
        return check(resource_id)

    def _satisfies(
        self, policy: Policy, identity: AuthContext, resource_id: str
    ) -> bool:
        if policy == Policy.OWN:
            return self.directory.is_course_owner(resource_id, identity.user_id)
        if policy == Policy.ENROLLED:
            return self.directory.has_active_enrollment(resource_id, identity.user_id)
        return False

    def resolve(
        self,
        identity: Optional[AuthContext],
        resource_id: Optional[str],
        required: Iterable[Policy],
        *,
        resource_type: str = "course",
    ) -> bool:
        """Return True when access is granted; raise otherwise."""
        policies = frozenset(Policy(p) for p in required)
        if not policies:
            raise ValueError("at least one access policy is required")
        if Policy.PUBLIC in policies:
            return True
        if identity is None:
            raise ForbiddenError(
                "authentication required", detail={"required": _sorted(policies)}
            )
        if not resource_id:
            raise NotFoundError("resource id not found")
        if not self._resource_exists(resource_type, resource_id):
            raise NotFoundError("resource not found")
        if identity.role == Role.ADMIN and Policy.ADMIN in policies:
            return True
        for policy in _EVALUATION_ORDER:
            if policy in policies and self._satisfies(policy, identity, resource_id):
                return True
        logger.info(
            "access_denied",
            user_id=identity.user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            required=_sorted(policies),
        )
        raise ForbiddenError(
            "access denied. required permissions: " + ", ".join(_sorted(policies)),
            detail={"required": _sorted(policies)},
        )
