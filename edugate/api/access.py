from __future__ import annotations

from typing import Any, FrozenSet, Iterable, Optional, Union

from fastapi import Header, Request

from edugate.logging import get_logger
from edugate.service.access import Policy
from edugate.service.auth import AuthContext, role_allows
from edugate.service.errors import ForbiddenError
from edugate.service.runtime import get_runtime
from edugate.storage.models import Role

logger = get_logger(__name__)

PolicyLike = Union[Policy, str, Iterable[Union[Policy, str]]]


def _flatten(policies: Iterable[PolicyLike]) -> FrozenSet[Policy]:
    flat: set[Policy] = set()
    for item in policies:
        if isinstance(item, (set, frozenset, list, tuple)):
            flat.update(Policy(p) for p in item)
        else:
            flat.add(Policy(item))
    return frozenset(flat)


def _first_string(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


async def extract_resource_id(request: Request, resource_type: str) -> Optional[str]:
    """Locate the target resource id for a request.

    Looks at the ``id`` path parameter, then ``<resource_type>_id`` in the
    path, the JSON body and the query string, in that order.
    """
    key = f"{resource_type}_id"
    found = _first_string(request.path_params.get("id"), request.path_params.get(key))
    if found:
        return found
    body_value = None
    if await request.body():
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            body_value = body.get(key)
    return _first_string(body_value, request.query_params.get(key))


async def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.sessions.authenticate(authorization)


def require_access(*policies: PolicyLike, resource_type: str = "course"):
    """Build a dependency enforcing that any one of ``policies`` holds.

    Accepts individual policies or preset sets such as ``OWN_RESOURCE``. The
    dependency resolves to the caller's :class:`AuthContext`, or ``None`` when
    the endpoint is public.
    """
    required = _flatten(policies)
    if not required:
        raise ValueError("require_access needs at least one policy")

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Optional[AuthContext]:
        if Policy.PUBLIC in required:
            return None
        runtime = get_runtime()
        # No header means anonymous (403); a bad header is a 401.
        identity = (
            await runtime.sessions.authenticate(authorization) if authorization else None
        )
        resource_id = await extract_resource_id(request, resource_type)
        runtime.access.resolve(
            identity, resource_id, required, resource_type=resource_type
        )
        return identity

    return dependency


def require_role(*roles: Union[Role, str]):
    """Dependency gate on the caller's role; admins pass every gate."""
    allowed = frozenset(Role(r) for r in roles)

    async def dependency(authorization: Optional[str] = Header(None)) -> AuthContext:
        runtime = get_runtime()
        principal = await runtime.sessions.authenticate(authorization)
        if not role_allows(principal.role, allowed):
            logger.info(
                "role_gate_denied",
                user_id=principal.user_id,
                role=principal.role.value,
                required=sorted(r.value for r in allowed),
            )
            raise ForbiddenError(
                "insufficient role",
                detail={"required": sorted(r.value for r in allowed)},
            )
        return principal

    return dependency
