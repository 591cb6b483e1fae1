"""Unit tests for the session manager.

Covers registration, login, refresh rotation, logout revocation, password
change/reset, email verification and account deactivation against the
in-memory store and cache.
"""

import asyncio

import pytest

from edugate.config import Settings
from edugate.service.auth import (
    INVALID_CREDENTIALS,
    INVALID_REFRESH,
    SessionManager,
    blacklist_key,
    refresh_key,
    reset_key,
)
from edugate.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from edugate.service.passwords import PASSWORD_ALGO, PasswordHasher
from edugate.service.tokens import ACCESS
from edugate.storage.memory import MemoryCache, MemoryStore
from edugate.storage.models import Role

PASSWORD = "CorrectHorse9!"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.resets = []
        self.verifications = []
        self.fail = fail

    def send_password_reset(self, to_email, token):
        if self.fail:
            raise ConnectionError("smtp down")
        self.resets.append((to_email, token))
        return True

    def send_email_verification(self, to_email, token):
        self.verifications.append((to_email, token))
        return True


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sessions(store, cache, settings, clock, notifier):
    return SessionManager(store, cache, settings, notifier=notifier, clock=clock)


async def _register_and_login(sessions, email="student@example.com", role=None):
    await sessions.register(email, PASSWORD, "Student", role)
    return await sessions.login(email, PASSWORD)


async def test_register_then_login_issues_access_token_for_identity(sessions, clock):
    ack = await sessions.register("student@example.com", PASSWORD, "Student")
    assert ack.success is True

    user, tokens = await sessions.login("student@example.com", PASSWORD)
    payload = sessions.codec.decode(tokens.access_token, token_type=ACCESS)

    assert payload["sub"] == user.id
    assert payload["exp"] > clock.now
    assert payload["role"] == "student"
    assert tokens.token_type == "bearer"
    assert tokens.expires_in == 3600


async def test_register_defaults_to_unverified_active_student(sessions, store):
    await sessions.register("new@example.com", PASSWORD, "New")
    user = store.get_user_by_email("new@example.com")
    assert user.role == Role.STUDENT
    assert user.is_active is True
    assert user.is_verified is False
    assert store.get_password_record(user.id)[0] != PASSWORD


async def test_register_duplicate_email_conflicts(sessions):
    await sessions.register("dup@example.com", PASSWORD, "One")
    with pytest.raises(ConflictError):
        await sessions.register("DUP@example.com", PASSWORD, "Two")


async def test_register_cannot_self_assign_admin(sessions):
    with pytest.raises(ForbiddenError):
        await sessions.register("root@example.com", PASSWORD, "Root", Role.ADMIN)


async def test_register_allows_teacher_role(sessions, store):
    await sessions.register("teach@example.com", PASSWORD, "Teach", "teacher")
    assert store.get_user_by_email("teach@example.com").role == Role.TEACHER


async def test_login_failures_share_one_message(sessions, store):
    await sessions.register("user@example.com", PASSWORD, "User")

    messages = []
    for email, password in [
        ("user@example.com", "wrong-password"),
        ("missing@example.com", PASSWORD),
    ]:
        with pytest.raises(AuthenticationError) as excinfo:
            await sessions.login(email, password)
        messages.append(excinfo.value.message)

    user = store.get_user_by_email("user@example.com")
    store.set_user_active(user.id, False)
    with pytest.raises(AuthenticationError) as excinfo:
        await sessions.login("user@example.com", PASSWORD)
    messages.append(excinfo.value.message)

    assert set(messages) == {INVALID_CREDENTIALS}


class CountingHasher(PasswordHasher):
    def __init__(self):
        super().__init__()
        self.verifications = 0

    def verify(self, stored_hash, password, algo=PASSWORD_ALGO):
        self.verifications += 1
        return super().verify(stored_hash, password, algo)


async def test_login_unknown_email_still_verifies_a_hash(store, cache, settings, clock):
    hasher = CountingHasher()
    sessions = SessionManager(store, cache, settings, hasher=hasher, clock=clock)

    with pytest.raises(AuthenticationError):
        await sessions.login("missing@example.com", PASSWORD)
    assert hasher.verifications == 1


async def test_login_stores_refresh_token(sessions, cache):
    user, tokens = await _register_and_login(sessions)
    assert await cache.get(refresh_key(user.id)) == tokens.refresh_token


async def test_refresh_rotates_and_supersedes_previous_token(sessions, clock):
    user, first = await _register_and_login(sessions)

    clock.advance(5)
    _, second = await sessions.refresh(first.refresh_token)
    assert second.refresh_token != first.refresh_token

    with pytest.raises(AuthenticationError) as excinfo:
        await sessions.refresh(first.refresh_token)
    assert excinfo.value.message == INVALID_REFRESH

    _, third = await sessions.refresh(second.refresh_token)
    assert third.access_token


async def test_new_login_supersedes_earlier_refresh_token(sessions):
    _, first = await _register_and_login(sessions)
    _, second = await sessions.login("student@example.com", PASSWORD)

    with pytest.raises(AuthenticationError):
        await sessions.refresh(first.refresh_token)
    await sessions.refresh(second.refresh_token)


async def test_refresh_rejects_access_token(sessions):
    _, tokens = await _register_and_login(sessions)
    with pytest.raises(AuthenticationError):
        await sessions.refresh(tokens.access_token)


async def test_refresh_rejects_expired_token(sessions, clock, settings):
    _, tokens = await _register_and_login(sessions)
    clock.advance(settings.refresh_token_ttl_minutes * 60 + 3600)
    with pytest.raises(AuthenticationError):
        await sessions.refresh(tokens.refresh_token)


async def test_logout_revokes_earlier_access_token_only(sessions, clock):
    user, before = await _register_and_login(sessions)
    ctx = await sessions.authenticate(f"Bearer {before.access_token}")
    assert ctx.user_id == user.id

    clock.advance(1)
    await sessions.logout(user.id)

    with pytest.raises(AuthenticationError):
        await sessions.authenticate(f"Bearer {before.access_token}")
    with pytest.raises(AuthenticationError):
        await sessions.refresh(before.refresh_token)

    clock.advance(1)
    _, after = await sessions.login("student@example.com", PASSWORD)
    ctx = await sessions.authenticate(f"Bearer {after.access_token}")
    assert ctx.user_id == user.id
    # The older token stays revoked after the new login.
    with pytest.raises(AuthenticationError):
        await sessions.authenticate(f"Bearer {before.access_token}")


async def test_logout_is_idempotent(sessions, cache, clock):
    user, _ = await _register_and_login(sessions)
    await sessions.logout(user.id)
    clock.advance(1)
    await sessions.logout(user.id)
    assert float(await cache.get(blacklist_key(user.id))) == clock.now
    assert await cache.get(refresh_key(user.id)) is None


async def test_unreadable_revocation_marker_counts_as_revoked(sessions, cache):
    await cache.set(blacklist_key("someone"), "not-a-number", 60)
    assert await sessions.is_revoked("someone", 0) is True
    assert await sessions.is_revoked("nobody", 0) is False


async def test_change_password_wrong_current_keeps_hash(sessions, store):
    user, _ = await _register_and_login(sessions)
    before = store.get_password_record(user.id)

    with pytest.raises(BadRequestError):
        await sessions.change_password(user.id, "not-my-password", "BrandNewPass1!")

    assert store.get_password_record(user.id) == before


async def test_change_password_drops_refresh_but_keeps_access(sessions, cache):
    user, tokens = await _register_and_login(sessions)

    await sessions.change_password(user.id, PASSWORD, "BrandNewPass1!")

    assert await cache.get(refresh_key(user.id)) is None
    with pytest.raises(AuthenticationError):
        await sessions.refresh(tokens.refresh_token)
    ctx = await sessions.authenticate(f"Bearer {tokens.access_token}")
    assert ctx.user_id == user.id
    await sessions.login("student@example.com", "BrandNewPass1!")


async def test_change_password_unknown_identity(sessions):
    with pytest.raises(NotFoundError):
        await sessions.change_password("missing", PASSWORD, "BrandNewPass1!")


async def test_forgot_password_same_ack_for_unknown_email(sessions, notifier):
    await sessions.register("known@example.com", PASSWORD, "Known")

    unknown = await sessions.forgot_password("unknown@example.com")
    known = await sessions.forgot_password("known@example.com")

    assert unknown.message == known.message
    assert len(notifier.resets) == 1
    assert notifier.resets[0][0] == "known@example.com"


async def test_forgot_password_swallows_notifier_failure(store, cache, settings, clock):
    sessions = SessionManager(
        store, cache, settings, notifier=RecordingNotifier(fail=True), clock=clock
    )
    await sessions.register("known@example.com", PASSWORD, "Known")
    ack = await sessions.forgot_password("known@example.com")
    assert ack.success is True


async def test_reset_password_succeeds_exactly_once(sessions, notifier, cache):
    user, tokens = await _register_and_login(sessions)
    await sessions.forgot_password("student@example.com")
    _, reset_token = notifier.resets[-1]

    await sessions.reset_password(reset_token, "ResetPassword1!")

    assert await cache.get(reset_key(user.id)) is None
    assert await cache.get(refresh_key(user.id)) is None
    with pytest.raises(AuthenticationError):
        await sessions.reset_password(reset_token, "AnotherPassword1!")
    with pytest.raises(AuthenticationError):
        await sessions.refresh(tokens.refresh_token)
    await sessions.login("student@example.com", "ResetPassword1!")


async def test_concurrent_reset_with_same_token_succeeds_once(sessions, notifier):
    await _register_and_login(sessions)
    await sessions.forgot_password("student@example.com")
    _, reset_token = notifier.resets[-1]

    results = await asyncio.gather(
        sessions.reset_password(reset_token, "ResetPassword1!"),
        sessions.reset_password(reset_token, "ResetPassword2!"),
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert sum(1 for r in results if isinstance(r, AuthenticationError)) == 1
    await sessions.login("student@example.com", "ResetPassword1!")


async def test_forgot_password_mints_for_inactive_account(sessions, notifier, store):
    user, _ = await _register_and_login(sessions)
    store.set_user_active(user.id, False)

    await sessions.forgot_password("student@example.com")
    assert len(notifier.resets) == 1

    _, reset_token = notifier.resets[-1]
    await sessions.reset_password(reset_token, "ResetPassword1!")
    with pytest.raises(AuthenticationError):
        await sessions.login("student@example.com", "ResetPassword1!")


async def test_superseded_reset_token_is_rejected(sessions, notifier):
    await _register_and_login(sessions)
    await sessions.forgot_password("student@example.com")
    _, first = notifier.resets[-1]
    await sessions.forgot_password("student@example.com")

    with pytest.raises(AuthenticationError):
        await sessions.reset_password(first, "ResetPassword1!")


async def test_reset_password_rejects_other_token_types(sessions):
    _, tokens = await _register_and_login(sessions)
    with pytest.raises(AuthenticationError):
        await sessions.reset_password(tokens.access_token, "ResetPassword1!")


async def test_reset_token_expires(sessions, notifier, clock, settings):
    await _register_and_login(sessions)
    await sessions.forgot_password("student@example.com")
    _, reset_token = notifier.resets[-1]
    clock.advance(settings.reset_token_ttl_minutes * 60 + 60)
    with pytest.raises(AuthenticationError):
        await sessions.reset_password(reset_token, "ResetPassword1!")


async def test_email_verification_is_single_use(sessions, notifier, store):
    user, _ = await _register_and_login(sessions)

    await sessions.request_email_verification(user.id)
    _, token = notifier.verifications[-1]

    await sessions.verify_email(token)
    assert store.get_user(user.id).is_verified is True

    with pytest.raises(AuthenticationError):
        await sessions.verify_email(token)

    ack = await sessions.request_email_verification(user.id)
    assert ack.message == "email already verified"
    assert len(notifier.verifications) == 1


async def test_concurrent_email_verification_succeeds_once(sessions, notifier):
    user, _ = await _register_and_login(sessions)
    await sessions.request_email_verification(user.id)
    _, token = notifier.verifications[-1]

    results = await asyncio.gather(
        sessions.verify_email(token), sessions.verify_email(token), return_exceptions=True
    )

    assert [isinstance(r, AuthenticationError) for r in results].count(True) == 1


async def test_deactivation_locks_out_live_tokens(sessions, cache):
    user, tokens = await _register_and_login(sessions)

    await sessions.set_active(user.id, False)

    assert await cache.get(refresh_key(user.id)) is None
    with pytest.raises(AuthenticationError):
        await sessions.authenticate(f"Bearer {tokens.access_token}")
    with pytest.raises(AuthenticationError):
        await sessions.login("student@example.com", PASSWORD)

    await sessions.set_active(user.id, True)
    ctx = await sessions.authenticate(f"Bearer {tokens.access_token}")
    assert ctx.user_id == user.id


async def test_set_active_unknown_identity(sessions):
    with pytest.raises(NotFoundError):
        await sessions.set_active("missing", False)


async def test_authenticate_reflects_current_role(sessions, store):
    user, tokens = await _register_and_login(sessions)
    store.update_user_role(user.id, Role.TEACHER)

    ctx = await sessions.authenticate(f"Bearer {tokens.access_token}")
    assert ctx.role == Role.TEACHER


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer not.a.jwt"])
async def test_authenticate_rejects_bad_headers(sessions, header):
    with pytest.raises(AuthenticationError):
        await sessions.authenticate(header)
