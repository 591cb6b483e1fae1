from __future__ import annotations

import asyncio
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol

from edugate.config import Settings
from edugate.logging import email_fingerprint, get_logger
from edugate.service.email import EmailService
from edugate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from edugate.service.passwords import PasswordHasher
from edugate.service.tokens import ACCESS, REFRESH, RESET, VERIFY, TokenCodec
from edugate.storage.errors import ConstraintViolation
from edugate.storage.models import Role, User
from edugate.storage.redis_cache import SessionCache

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
INVALID_REFRESH = "invalid refresh token"
INVALID_RESET = "invalid or expired reset token"
INVALID_VERIFY = "invalid or expired verification token"
INVALID_TOKEN = "invalid or expired token"


def refresh_key(user_id: str) -> str:
    return f"refresh:{user_id}"


def blacklist_key(user_id: str) -> str:
    return f"blacklist:{user_id}"


def reset_key(user_id: str) -> str:
    return f"reset:{user_id}"


def verify_key(user_id: str) -> str:
    return f"verify:{user_id}"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        display_name: str = "",
        *,
        role: Role = Role.STUDENT,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str
    role: Role
    display_name: str = ""
    is_verified: bool = False
    issued_at: Optional[float] = None


@dataclass
class TokenBundle:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def as_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass
class AuthAck:
    message: str
    success: bool = True


def role_allows(role: Role | str, required: Iterable[Role | str]) -> bool:
    """Admin satisfies every role gate; other roles must be listed."""
    role = Role(role)
    if role == Role.ADMIN:
        return True
    return role in {Role(r) for r in required}


class SessionManager:
    """Issues, rotates and revokes tokens for identities held in ``store``.

    Session state lives in ``cache``:

    - ``refresh:<id>``: the single valid refresh token (overwritten on issue)
    - ``blacklist:<id>``: logout timestamp; tokens issued at or before it are revoked
    - ``reset:<id>`` / ``verify:<id>``: single-use reset and verification tokens
    """

    def __init__(
        self,
        store: AuthStore,
        cache: SessionCache,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        hasher: Optional[PasswordHasher] = None,
        notifier: Optional[EmailService] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.codec = codec or TokenCodec(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.clock_skew_leeway_seconds,
            clock=clock,
        )
        self.hasher = hasher or PasswordHasher()
        self.notifier = notifier
        self._timing_hash: Optional[str] = None
        self.logger = logger

    # ---------------------------------------------------------------- helpers

    @property
    def access_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    @property
    def refresh_ttl_seconds(self) -> int:
        return self.settings.refresh_token_ttl_minutes * 60

    async def _hash_password(self, password: str) -> tuple[str, str]:
        return await asyncio.to_thread(self.hasher.hash, password)

    def _verify_unknown(self, password: str) -> bool:
        if self._timing_hash is None:
            self._timing_hash, _ = self.hasher.hash(secrets.token_urlsafe(16))
        return self.hasher.verify(self._timing_hash, password)

    async def _verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        return await asyncio.to_thread(self.hasher.verify, stored_hash, password, algo)

    @staticmethod
    def _claims_for(user: User) -> dict[str, Any]:
        return {
            "sub": user.id,
            "email": user.email,
            "role": user.role.value,
            "name": user.display_name,
        }

    @staticmethod
    def _matches_stored(stored: Optional[str], presented: str) -> bool:
        if not stored:
            return False
        return hmac.compare_digest(stored.encode(), presented.encode())

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def _issue_tokens(self, user: User) -> TokenBundle:
        claims = self._claims_for(user)
        access_token = self.codec.encode(
            claims, token_type=ACCESS, ttl_seconds=self.access_ttl_seconds
        )
        refresh_token = self.codec.encode(
            claims, token_type=REFRESH, ttl_seconds=self.refresh_ttl_seconds
        )
        # Overwriting the stored copy invalidates every earlier refresh token.
        await self.cache.set(
            refresh_key(user.id), refresh_token, self.refresh_ttl_seconds
        )
        return TokenBundle(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl_seconds,
        )

    async def _notify(self, send: Callable[[str, str], bool], email: str, token: str) -> None:
        try:
            sent = await asyncio.to_thread(send, email, token)
        except Exception as exc:
            self.logger.warning(
                "notification_failed",
                email_hash=email_fingerprint(email),
                error=str(exc),
            )
            return
        if not sent:
            self.logger.warning(
                "notification_not_delivered", email_hash=email_fingerprint(email)
            )

    # ------------------------------------------------------------- operations

    async def register(
        self,
        email: str,
        password: str,
        display_name: str = "",
        role: Optional[Role | str] = None,
    ) -> AuthAck:
        if not self.settings.allow_registration:
            raise ForbiddenError("registration is disabled")
        try:
            assigned = Role(role) if role else Role.STUDENT
        except ValueError:
            raise BadRequestError("unknown role", detail={"field": "role"})
        if assigned == Role.ADMIN and not self.settings.allow_self_assigned_admin:
            raise ForbiddenError("admin role cannot be self-assigned")
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        pwd_hash, algo = await self._hash_password(password)
        try:
            user = self.store.create_user(email, display_name, role=assigned)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        self.store.save_password(user.id, pwd_hash, algo)
        self.logger.info("user_registered", user_id=user.id, role=user.role.value)
        return AuthAck("registration successful")

    async def login(self, email: str, password: str) -> tuple[User, TokenBundle]:
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            # Pay the same hash cost as a wrong password.
            await asyncio.to_thread(self._verify_unknown, password)
            self.logger.info("login_failed", email_hash=email_fingerprint(email))
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await self._verify_password(user.id, password):
            self.logger.info("login_failed", email_hash=email_fingerprint(email))
            raise AuthenticationError(INVALID_CREDENTIALS)
        tokens = await self._issue_tokens(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, tokens

    async def refresh(self, refresh_token: str) -> tuple[User, TokenBundle]:
        payload = self.codec.decode(refresh_token, token_type=REFRESH)
        if not payload:
            raise AuthenticationError(INVALID_REFRESH)
        user_id = str(payload["sub"])
        stored = await self.cache.get(refresh_key(user_id))
        if not self._matches_stored(stored, refresh_token):
            self.logger.info("refresh_token_superseded", user_id=user_id)
            raise AuthenticationError(INVALID_REFRESH)
        if await self.is_revoked(user_id, payload["iat"]):
            raise AuthenticationError(INVALID_REFRESH)
        user = self.validate(user_id)
        if not user:
            raise AuthenticationError(INVALID_REFRESH)
        tokens = await self._issue_tokens(user)
        self.logger.info("refresh_rotated", user_id=user.id)
        return user, tokens

    async def logout(self, user_id: str) -> AuthAck:
        await self.cache.delete(refresh_key(user_id))
        await self.cache.set(
            blacklist_key(user_id),
            repr(self._clock()),
            self.settings.revocation_retention_minutes * 60,
        )
        self.logger.info("logout", user_id=user_id)
        return AuthAck("logged out")

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> AuthAck:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if not await self._verify_password(user.id, current_password):
            raise BadRequestError("current password is incorrect")
        pwd_hash, algo = await self._hash_password(new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        await self.cache.delete(refresh_key(user.id))
        self.logger.info("password_changed", user_id=user.id)
        return AuthAck("password changed")

    async def forgot_password(self, email: str) -> AuthAck:
        ack = AuthAck("if the account exists, a reset link has been sent")
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_account", email_hash=email_fingerprint(email)
            )
            return ack
        ttl = self.settings.reset_token_ttl_minutes * 60
        token = self.codec.encode(
            {"sub": user.id, "email": user.email}, token_type=RESET, ttl_seconds=ttl
        )
        await self.cache.set(reset_key(user.id), token, ttl)
        self.logger.info("password_reset_requested", user_id=user.id)
        if self.notifier:
            await self._notify(self.notifier.send_password_reset, user.email, token)
        return ack

    async def reset_password(self, reset_token: str, new_password: str) -> AuthAck:
        payload = self.codec.decode(reset_token, token_type=RESET)
        if not payload:
            raise AuthenticationError(INVALID_RESET)
        user_id = str(payload["sub"])
        # Consumed before hashing so concurrent uses cannot both pass the check.
        stored = await self.cache.pop(reset_key(user_id))
        if not self._matches_stored(stored, reset_token):
            self.logger.warning("password_reset_invalid_token", user_id=user_id)
            raise AuthenticationError(INVALID_RESET)
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError(INVALID_RESET)
        pwd_hash, algo = await self._hash_password(new_password)
        self.store.save_password(user.id, pwd_hash, algo)
        await self.cache.delete(refresh_key(user.id))
        self.logger.info("password_reset_completed", user_id=user.id)
        return AuthAck("password has been reset")

    async def request_email_verification(self, user_id: str) -> AuthAck:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.is_verified:
            return AuthAck("email already verified")
        ttl = self.settings.verify_token_ttl_minutes * 60
        token = self.codec.encode(
            {"sub": user.id, "email": user.email}, token_type=VERIFY, ttl_seconds=ttl
        )
        await self.cache.set(verify_key(user.id), token, ttl)
        self.logger.info("email_verification_requested", user_id=user.id)
        if self.notifier:
            await self._notify(self.notifier.send_email_verification, user.email, token)
        return AuthAck("verification email sent")

    async def verify_email(self, token: str) -> AuthAck:
        payload = self.codec.decode(token, token_type=VERIFY)
        if not payload:
            raise AuthenticationError(INVALID_VERIFY)
        user_id = str(payload["sub"])
        stored = await self.cache.pop(verify_key(user_id))
        if not self._matches_stored(stored, token):
            self.logger.warning("email_verification_invalid_token", user_id=user_id)
            raise AuthenticationError(INVALID_VERIFY)
        user = self.store.mark_email_verified(user_id)
        if not user:
            raise AuthenticationError(INVALID_VERIFY)
        self.logger.info("email_verified", user_id=user_id)
        return AuthAck("email verified")

    async def set_active(self, user_id: str, active: bool) -> User:
        user = self.store.set_user_active(user_id, active)
        if not user:
            raise NotFoundError("user not found")
        if not active:
            await self.cache.delete(refresh_key(user_id))
        self.logger.info("user_active_changed", user_id=user_id, active=active)
        return user

    # --------------------------------------------------------- authentication

    def validate(self, user_id: str) -> Optional[User]:
        """Re-read the identity; absent or inactive identities fail closed."""
        user = self.store.get_user(user_id)
        if not user or not user.is_active:
            return None
        return user

    async def is_revoked(self, user_id: str, issued_at: Any) -> bool:
        marker = await self.cache.get(blacklist_key(user_id))
        if marker is None:
            return False
        try:
            return float(marker) >= float(issued_at)
        except (TypeError, ValueError):
            self.logger.warning("revocation_marker_unreadable", user_id=user_id)
            return True

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError(INVALID_TOKEN)
        payload = self.codec.decode(token, token_type=ACCESS)
        if not payload:
            raise AuthenticationError(INVALID_TOKEN)
        user = self.validate(str(payload["sub"]))
        if not user:
            raise AuthenticationError(INVALID_TOKEN)
        if await self.is_revoked(user.id, payload["iat"]):
            self.logger.info("access_token_revoked", user_id=user.id)
            raise AuthenticationError(INVALID_TOKEN)
        return AuthContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            display_name=user.display_name,
            is_verified=user.is_verified,
            issued_at=float(payload["iat"]),
        )

    def get_current_identity(self, context: AuthContext) -> dict[str, Any]:
        return {
            "id": context.user_id,
            "email": context.email,
            "display_name": context.display_name,
            "role": context.role.value,
            "is_verified": context.is_verified,
        }

    def check_authentication(self, context: AuthContext) -> dict[str, Any]:
        return {
            "authenticated": True,
            "user_id": context.user_id,
            "role": context.role.value,
        }
