from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from edugate.api.access import get_current_user, require_access, require_role
from edugate.api.schemas import (
    AckResponse,
    AuthCheckResponse,
    AuthResponse,
    CourseCreateRequest,
    CourseMaterialsResponse,
    CourseResponse,
    CourseUpdateRequest,
    EmailVerificationRequest,
    EnrollmentCreateRequest,
    EnrollmentListResponse,
    EnrollmentResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from edugate.logging import get_logger
from edugate.service.access import (
    ADMIN_RESOURCE,
    ENROLLED_OR_OWN_RESOURCE,
    OWN_RESOURCE,
    PUBLIC_RESOURCE,
)
from edugate.service.auth import AuthAck, AuthContext, TokenBundle
from edugate.service.errors import BadRequestError, NotFoundError
from edugate.service.runtime import get_runtime
from edugate.storage.models import Course, Enrollment, Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ack(ack: AuthAck) -> Envelope:
    return Envelope(
        status="ok", data=AckResponse(message=ack.message, success=ack.success)
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        role=user.role.value,
        is_verified=user.is_verified,
        is_active=user.is_active,
        created_at=user.created_at,
    )


def _auth_response(user: User, tokens: TokenBundle) -> AuthResponse:
    return AuthResponse(user=_user_response(user), **tokens.as_dict())


def _course_response(course: Course) -> CourseResponse:
    return CourseResponse(
        id=course.id,
        teacher_id=course.teacher_id,
        title=course.title,
        description=course.description,
        created_at=course.created_at,
        updated_at=course.updated_at,
    )


def _enrollment_response(enrollment: Enrollment) -> EnrollmentResponse:
    return EnrollmentResponse(
        id=enrollment.id,
        student_id=enrollment.student_id,
        course_id=enrollment.course_id,
        status=enrollment.status.value,
        created_at=enrollment.created_at,
    )


def _require_course(course_id: str) -> Course:
    course = get_runtime().store.get_course(course_id)
    if not course:
        raise NotFoundError("resource not found")
    return course


# --------------------------------------------------------------------- auth


@router.post(
    "/auth/register", response_model=Envelope, status_code=201, tags=["auth"]
)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    ack = await runtime.sessions.register(
        body.email, body.password, body.display_name, body.role
    )
    return _ack(ack)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    user, tokens = await runtime.sessions.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    user, tokens = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(user, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    return _ack(await runtime.sessions.logout(principal.user_id))


@router.patch("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    ack = await runtime.sessions.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return _ack(ack)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    # Same response whether or not the account exists.
    return _ack(await runtime.sessions.forgot_password(body.email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    return _ack(await runtime.sessions.reset_password(body.token, body.new_password))


@router.post("/auth/request-verification", response_model=Envelope, tags=["auth"])
async def request_email_verification(
    principal: AuthContext = Depends(get_current_user),
):
    runtime = get_runtime()
    return _ack(await runtime.sessions.request_email_verification(principal.user_id))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    runtime = get_runtime()
    return _ack(await runtime.sessions.verify_email(body.token))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=UserResponse(**runtime.sessions.get_current_identity(principal)),
    )


@router.get("/auth/check", response_model=Envelope, tags=["auth"])
async def check_authentication(principal: AuthContext = Depends(get_current_user)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=AuthCheckResponse(**runtime.sessions.check_authentication(principal)),
    )


# ------------------------------------------------------------------ courses


@router.post("/courses", response_model=Envelope, status_code=201, tags=["courses"])
async def create_course(
    body: CourseCreateRequest,
    principal: AuthContext = Depends(require_role(Role.TEACHER)),
):
    runtime = get_runtime()
    course = runtime.store.create_course(
        principal.user_id, body.title, body.description
    )
    logger.info("course_created", course_id=course.id, teacher_id=principal.user_id)
    return Envelope(status="ok", data=_course_response(course))


@router.get("/courses/{id}", response_model=Envelope, tags=["courses"])
async def get_course(
    id: str,
    _: Optional[AuthContext] = Depends(require_access(PUBLIC_RESOURCE)),
):
    return Envelope(status="ok", data=_course_response(_require_course(id)))


@router.patch("/courses/{id}", response_model=Envelope, tags=["courses"])
async def update_course(
    id: str,
    body: CourseUpdateRequest,
    principal: AuthContext = Depends(require_access(OWN_RESOURCE)),
):
    runtime = get_runtime()
    course = runtime.store.update_course(
        id, title=body.title, description=body.description
    )
    if not course:
        raise NotFoundError("resource not found")
    logger.info("course_updated", course_id=id, user_id=principal.user_id)
    return Envelope(status="ok", data=_course_response(course))


@router.delete("/courses/{id}", response_model=Envelope, tags=["courses"])
async def delete_course(
    id: str,
    principal: AuthContext = Depends(require_access(ADMIN_RESOURCE)),
):
    runtime = get_runtime()
    if not runtime.store.delete_course(id):
        raise NotFoundError("resource not found")
    logger.info("course_deleted", course_id=id, user_id=principal.user_id)
    return Envelope(status="ok", data={"id": id, "deleted": True})


@router.get(
    "/courses/{course_id}/materials", response_model=Envelope, tags=["courses"]
)
async def list_course_materials(
    course_id: str,
    _: AuthContext = Depends(require_access(ENROLLED_OR_OWN_RESOURCE)),
):
    course = _require_course(course_id)
    # Material content lives outside this service; only the gate is enforced here.
    return Envelope(
        status="ok",
        data=CourseMaterialsResponse(course_id=course.id, title=course.title),
    )


@router.get(
    "/courses/{course_id}/enrollments", response_model=Envelope, tags=["courses"]
)
async def list_course_enrollments(
    course_id: str,
    _: AuthContext = Depends(require_access(OWN_RESOURCE)),
):
    runtime = get_runtime()
    items = [_enrollment_response(e) for e in runtime.store.list_enrollments(course_id)]
    return Envelope(status="ok", data=EnrollmentListResponse(items=items))


@router.post(
    "/enrollments", response_model=Envelope, status_code=201, tags=["enrollments"]
)
async def enroll(
    body: EnrollmentCreateRequest,
    principal: AuthContext = Depends(require_role(Role.STUDENT)),
):
    runtime = get_runtime()
    _require_course(body.course_id)
    enrollment = runtime.store.create_enrollment(principal.user_id, body.course_id)
    logger.info(
        "enrollment_created",
        enrollment_id=enrollment.id,
        course_id=body.course_id,
        user_id=principal.user_id,
    )
    return Envelope(status="ok", data=_enrollment_response(enrollment))


# -------------------------------------------------------------------- admin


async def _set_user_active(user_id: str, principal: AuthContext, active: bool) -> Envelope:
    if user_id == principal.user_id and not active:
        raise BadRequestError("administrators cannot deactivate themselves")
    runtime = get_runtime()
    user = await runtime.sessions.set_active(user_id, active)
    return Envelope(status="ok", data=_user_response(user))


@router.patch(
    "/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"]
)
async def deactivate_user(
    user_id: str, principal: AuthContext = Depends(require_role(Role.ADMIN))
):
    return await _set_user_active(user_id, principal, False)


@router.patch(
    "/admin/users/{user_id}/reactivate", response_model=Envelope, tags=["admin"]
)
async def reactivate_user(
    user_id: str, principal: AuthContext = Depends(require_role(Role.ADMIN))
):
    return await _set_user_active(user_id, principal, True)
