"""Unit tests for the authentication orchestrator.

Covers:
- Registration, including best-effort role assignment and transactional session creation
- Login, credential checks and account state
- Refresh token exchange against server-side sessions
- Logout, logout-all and token verification
- Password changes and the session purge that follows
"""

from datetime import timedelta

import pytest

from authkernel.config import Settings
from authkernel.service.auth import AuthService, ClientContext
from authkernel.service.errors import (
    DatabaseError,
    EmailExistsError,
    InvalidCredentialsError,
    ServerError,
    TokenExpiredError,
    TokenInvalidError,
    UserInactiveError,
    UserNotFoundError,
    UsernameExistsError,
    ValidationError,
    WeakPasswordError,
)
from authkernel.service.passwords import HashParameters, PasswordHasher
from authkernel.service.runtime import build_hasher, build_token_authority
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import User, utcnow

PASSWORD = "Aa1!aaaa"
NEW_PASSWORD = "Bb2@bbbbbb"


class FlakyStore(MemoryStore):
    """Memory store whose listed methods fail like a lost database connection."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.failing: set[str] = set()

    def __getattribute__(self, name):
        failing = object.__getattribute__(self, "__dict__").get("failing", ())
        if name in failing:
            def _fail(*args, **kwargs):
                raise RuntimeError(f"{name}: connection lost")

            return _fail
        return object.__getattribute__(self, name)


class InterleavingHasher(PasswordHasher):
    """Runs ``after_verify`` once, right after a verification, to model a concurrent write."""

    def __init__(self, params=None):
        super().__init__(params or HashParameters(memory_cost=1024, time_cost=1, parallelism=1))
        self.after_verify = None

    def verify(self, password, encoded):
        result = super().verify(password, encoded)
        hook, self.after_verify = self.after_verify, None
        if hook is not None:
            hook()
        return result


class RecordingPublisher:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)

    def types(self):
        return [e.type for e in self.events]


class FailingPublisher:
    async def publish(self, event):
        raise ConnectionError("stream unavailable")


@pytest.fixture
def settings():
    return Settings(
        test_mode=True,
        jwt_access_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        argon2_memory_cost=1024,
        argon2_time_cost=1,
        argon2_parallelism=1,
    )


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def tokens(settings):
    return build_token_authority(settings)


@pytest.fixture
def auth(store, tokens, settings, publisher):
    return AuthService(store, tokens, build_hasher(settings), settings, publisher=publisher)


@pytest.fixture
def hasher():
    return InterleavingHasher()


@pytest.fixture
def racing_auth(store, tokens, settings, hasher):
    return AuthService(store, tokens, hasher, settings)


async def _register(auth, email="a@x.com", username="alice", password=PASSWORD, **kwargs):
    return await auth.register(email, username, password, **kwargs)


class TestRegister:
    async def test_register_returns_tokens_and_public_user(self, auth, tokens):
        """A fresh account is active, unverified and holds the default role."""
        result = await _register(auth)

        assert result.access_token
        assert result.refresh_token
        assert result.token_type == "Bearer"
        assert result.expires_in == 15 * 60
        assert result.user["is_active"] is True
        assert result.user["is_verified"] is False
        assert result.roles == ["user"]
        assert "password_hash" not in result.user
        claims = tokens.validate_access(result.access_token)
        assert claims.roles == ["user"]
        assert claims.email == "a@x.com"

    async def test_register_stores_session_with_client_context(self, auth, store):
        result = await _register(
            auth, client=ClientContext(ip_address="203.0.113.9", user_agent="pytest/1.0")
        )

        session = store.get_session_by_refresh_token(result.refresh_token)
        assert session.id == result.session_id
        assert session.ip_address == "203.0.113.9"
        assert session.user_agent == "pytest/1.0"
        assert session.expires_at - session.created_at == timedelta(days=7)

    async def test_register_defaults_missing_client_context(self, auth, store):
        result = await _register(auth)
        session = store.get_session_by_refresh_token(result.refresh_token)
        assert session.ip_address == "127.0.0.1"
        assert session.user_agent == "Unknown"

    async def test_register_normalizes_and_hashes(self, auth, store):
        await _register(auth, email="  A@X.COM ", username="Alice", first_name=" Ada ")

        user = store.get_user_by_email("a@x.com")
        assert user.username == "alice"
        assert user.first_name == "Ada"
        assert user.password_hash.startswith("$argon2id$")
        assert PASSWORD not in user.password_hash

    async def test_register_publishes_event(self, auth, publisher):
        result = await _register(auth)
        assert publisher.types() == ["user.registered"]
        assert publisher.events[0].user_id == result.user["id"]

    async def test_weak_password_creates_nothing(self, auth, store):
        with pytest.raises(WeakPasswordError):
            await _register(auth, password="weak")
        assert store.count_users() == 0

    @pytest.mark.parametrize(
        "email,username",
        [("not-an-email", "alice"), ("a@x.com", "al"), ("a@x.com", "bad name")],
    )
    async def test_invalid_identity_rejected_before_storage(self, auth, store, email, username):
        store.failing = {"email_exists", "username_exists", "create_user"}
        with pytest.raises(ValidationError) as excinfo:
            await _register(auth, email=email, username=username)
        assert excinfo.value.error_code == "validation_error"

    async def test_duplicate_email_leaves_first_user_untouched(self, auth, store):
        first = await _register(auth)
        before = store.get_user(first.user["id"])

        with pytest.raises(EmailExistsError):
            await _register(auth, email="A@x.com", username="bob", password="Zz9?zzzz")

        after = store.get_user(first.user["id"])
        assert after == before
        assert store.count_users() == 1

    async def test_duplicate_username(self, auth):
        await _register(auth)
        with pytest.raises(UsernameExistsError):
            await _register(auth, email="b@x.com", username="ALICE")

    async def test_insert_race_maps_to_conflict(self, auth, store):
        """A collision caught by the store's unique constraint still names the field."""
        await _register(auth)
        store.email_exists = lambda email: False
        with pytest.raises(EmailExistsError):
            await _register(auth, username="bob")
        store.username_exists = lambda username: False
        with pytest.raises(UsernameExistsError):
            await _register(auth, email="b@x.com")

    async def test_missing_default_role_degrades_to_no_roles(self, store, tokens, publisher):
        settings = Settings(
            test_mode=True,
            jwt_access_secret="a",
            jwt_refresh_secret="b",
            argon2_memory_cost=1024,
            argon2_time_cost=1,
            argon2_parallelism=1,
            default_role="ghost",
        )
        auth = AuthService(store, tokens, build_hasher(settings), settings, publisher=publisher)

        result = await _register(auth)

        assert result.roles == []
        assert store.get_user(result.user["id"]) is not None

    async def test_role_assignment_failure_is_not_fatal(self, auth, store, tokens):
        store.failing = {"assign_role"}
        result = await _register(auth)

        assert result.roles == []
        assert tokens.validate_access(result.access_token).roles == []
        assert store.get_user(result.user["id"]) is not None

    async def test_role_lookup_failure_is_not_fatal(self, auth, store):
        store.failing = {"get_user_roles"}
        result = await _register(auth)
        assert result.roles == []

    async def test_session_failure_rolls_back_user(self, auth, store, publisher):
        store.failing = {"create_session"}
        with pytest.raises(DatabaseError) as excinfo:
            await _register(auth)

        assert isinstance(excinfo.value.cause, RuntimeError)
        assert excinfo.value.message == "database operation failed"
        assert store.get_user_by_email("a@x.com") is None
        assert publisher.events == []

    async def test_existence_check_failure_is_database_error(self, auth, store):
        store.failing = {"email_exists"}
        with pytest.raises(DatabaseError):
            await _register(auth)

    async def test_event_failure_is_not_fatal(self, store, tokens, settings):
        auth = AuthService(
            store, tokens, build_hasher(settings), settings, publisher=FailingPublisher()
        )
        result = await _register(auth)
        assert result.access_token


class TestLogin:
    async def test_login_success(self, auth, store, tokens, publisher):
        registered = await _register(auth)

        result = await auth.login(
            "a@x.com", PASSWORD, client=ClientContext("198.51.100.4", "curl/8")
        )

        assert result.user["id"] == registered.user["id"]
        assert result.roles == ["user"]
        assert result.refresh_token != registered.refresh_token
        assert tokens.validate_access(result.access_token).user_id == registered.user["id"]
        assert store.get_user(registered.user["id"]).last_login_at is not None
        assert publisher.types() == ["user.registered", "user.logged_in"]
        assert publisher.events[-1].data["ip_address"] == "198.51.100.4"

    async def test_login_normalizes_email(self, auth):
        await _register(auth)
        result = await auth.login("  A@X.com ", PASSWORD)
        assert result.user["email"] == "a@x.com"

    async def test_wrong_password_and_unknown_email_are_indistinguishable(self, auth):
        await _register(auth)

        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth.login("a@x.com", "Aa1!aaab")
        with pytest.raises(InvalidCredentialsError) as unknown_email:
            await auth.login("nobody@x.com", PASSWORD)

        assert wrong_password.value.error_code == unknown_email.value.error_code
        assert wrong_password.value.message == unknown_email.value.message
        assert wrong_password.value.status_code == 401

    async def test_inactive_user_with_correct_password(self, auth, store):
        registered = await _register(auth)
        user = store.get_user(registered.user["id"])
        user.is_active = False
        store.update_user(user)

        with pytest.raises(UserInactiveError):
            await auth.login("a@x.com", PASSWORD)

    async def test_inactive_user_with_wrong_password_sees_invalid_credentials(self, auth, store):
        registered = await _register(auth)
        user = store.get_user(registered.user["id"])
        user.is_active = False
        store.update_user(user)

        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", "Wrong1!pass")

    async def test_deleted_user_cannot_login(self, auth, store):
        registered = await _register(auth)
        store.delete_user(registered.user["id"])
        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", PASSWORD)

    async def test_lookup_failure_collapses_to_invalid_credentials(self, auth, store):
        await _register(auth)
        store.failing = {"get_user_by_email"}
        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", PASSWORD)

    async def test_last_login_update_failure_is_not_fatal(self, auth, store):
        await _register(auth)
        store.failing = {"update_last_login"}
        result = await auth.login("a@x.com", PASSWORD)
        assert result.access_token

    async def test_role_lookup_failure_is_fatal(self, auth, store):
        await _register(auth)
        store.failing = {"get_user_roles"}
        with pytest.raises(DatabaseError):
            await auth.login("a@x.com", PASSWORD)

    async def test_session_failure_is_fatal(self, auth, store):
        await _register(auth)
        store.failing = {"create_session"}
        with pytest.raises(DatabaseError):
            await auth.login("a@x.com", PASSWORD)

    async def test_concurrent_logins_create_independent_sessions(self, auth, store):
        registered = await _register(auth)
        first = await auth.login("a@x.com", PASSWORD)
        second = await auth.login("a@x.com", PASSWORD)

        assert first.session_id != second.session_id
        assert len(store.list_active_sessions(registered.user["id"])) == 3

    async def test_outdated_hash_is_upgraded_on_login(self, auth, store):
        legacy = PasswordHasher(HashParameters(memory_cost=2048, time_cost=1, parallelism=1))
        user = store.create_user(User.new("old@x.com", "olduser", legacy.hash(PASSWORD)))

        await auth.login("old@x.com", PASSWORD)

        assert "$m=1024,t=1,p=1$" in store.get_user(user.id).password_hash

    async def test_rehash_failure_is_not_fatal(self, auth, store):
        legacy = PasswordHasher(HashParameters(memory_cost=2048, time_cost=1, parallelism=1))
        user = store.create_user(User.new("old@x.com", "olduser", legacy.hash(PASSWORD)))
        store.failing = {"update_password_hash"}

        assert (await auth.login("old@x.com", PASSWORD)).access_token
        store.failing = set()
        assert "$m=2048," in store.get_user(user.id).password_hash

    async def test_deactivation_during_login_is_kept(self, racing_auth, store, hasher):
        registered = await _register(racing_auth)
        user_id = registered.user["id"]

        def deactivate():
            user = store.get_user(user_id)
            user.is_active = False
            store.update_user(user)

        hasher.after_verify = deactivate
        await racing_auth.login("a@x.com", PASSWORD)

        stored = store.get_user(user_id)
        assert stored.is_active is False
        assert stored.last_login_at is not None

    async def test_password_change_during_login_is_kept(self, racing_auth, store, hasher):
        registered = await _register(racing_auth)
        user_id = registered.user["id"]
        hasher.after_verify = lambda: store.update_password_hash(
            user_id, hasher.hash(NEW_PASSWORD)
        )

        await racing_auth.login("a@x.com", PASSWORD)

        assert hasher.verify(NEW_PASSWORD, store.get_user(user_id).password_hash)

    async def test_rehash_does_not_overwrite_concurrent_password_change(self, racing_auth, store, hasher):
        legacy = PasswordHasher(HashParameters(memory_cost=2048, time_cost=1, parallelism=1))
        user = store.create_user(User.new("old@x.com", "olduser", legacy.hash(PASSWORD)))
        hasher.after_verify = lambda: store.update_password_hash(
            user.id, hasher.hash(NEW_PASSWORD)
        )

        await racing_auth.login("old@x.com", PASSWORD)

        stored = store.get_user(user.id).password_hash
        assert hasher.verify(NEW_PASSWORD, stored)
        assert not hasher.verify(PASSWORD, stored)

    async def test_corrupt_stored_hash_is_server_error(self, auth, store):
        store.create_user(User.new("bad@x.com", "baduser", "plaintext"))
        with pytest.raises(ServerError):
            await auth.login("bad@x.com", PASSWORD)


class TestRefresh:
    async def test_refresh_issues_new_access_token_without_rotation(self, auth, tokens):
        registered = await _register(auth)

        first = await auth.refresh_token(registered.refresh_token)
        second = await auth.refresh_token(registered.refresh_token)

        assert first.token_type == "Bearer"
        assert first.expires_in == 15 * 60
        claims = tokens.validate_access(first.access_token)
        assert claims.user_id == registered.user["id"]
        assert claims.roles == ["user"]
        assert tokens.validate_access(second.access_token).token_id != claims.token_id

    @pytest.mark.parametrize("token", ["", "unknown-token", "bad\x00token"])
    async def test_unknown_token_is_invalid(self, auth, token):
        with pytest.raises(TokenInvalidError):
            await auth.refresh_token(token)

    async def test_expired_session(self, auth, store):
        registered = await _register(auth)
        session = store.get_session_by_refresh_token(registered.refresh_token)
        session.expires_at = utcnow() - timedelta(seconds=1)
        store.update_session(session)

        with pytest.raises(TokenExpiredError):
            await auth.refresh_token(registered.refresh_token)

    async def test_inactive_session(self, auth, store):
        registered = await _register(auth)
        session = store.get_session_by_refresh_token(registered.refresh_token)
        session.is_active = False
        store.update_session(session)

        with pytest.raises(TokenExpiredError):
            await auth.refresh_token(registered.refresh_token)

    async def test_session_expiring_now_is_expired(self, auth, store):
        registered = await _register(auth)
        session = store.get_session_by_refresh_token(registered.refresh_token)
        assert session.is_expired(session.expires_at) is True
        assert session.is_expired(session.expires_at - timedelta(microseconds=1)) is False

    async def test_deleted_owner(self, auth, store):
        registered = await _register(auth)
        store.delete_user(registered.user["id"])
        with pytest.raises(UserNotFoundError):
            await auth.refresh_token(registered.refresh_token)

    async def test_inactive_owner(self, auth, store):
        registered = await _register(auth)
        user = store.get_user(registered.user["id"])
        user.is_active = False
        store.update_user(user)
        with pytest.raises(UserInactiveError):
            await auth.refresh_token(registered.refresh_token)

    async def test_role_lookup_failure_degrades_to_no_roles(self, auth, store, tokens):
        registered = await _register(auth)
        store.failing = {"get_user_roles"}
        result = await auth.refresh_token(registered.refresh_token)
        assert tokens.validate_access(result.access_token).roles == []

    async def test_session_lookup_failure_is_database_error(self, auth, store):
        registered = await _register(auth)
        store.failing = {"get_session_by_refresh_token"}
        with pytest.raises(DatabaseError):
            await auth.refresh_token(registered.refresh_token)


class TestLogout:
    async def test_logout_is_idempotent(self, auth, publisher):
        registered = await _register(auth)

        await auth.logout(registered.refresh_token)
        await auth.logout(registered.refresh_token)

        with pytest.raises(TokenInvalidError):
            await auth.refresh_token(registered.refresh_token)
        assert publisher.types().count("user.logged_out") == 1
        assert publisher.events[-1].data["email"] == "a@x.com"

    async def test_logout_unknown_or_empty_token(self, auth):
        await auth.logout("never-issued")
        await auth.logout("")
        await auth.logout("bad\x00token")

    async def test_logout_only_ends_that_session(self, auth):
        registered = await _register(auth)
        other = await auth.login("a@x.com", PASSWORD)

        await auth.logout(registered.refresh_token)

        assert (await auth.refresh_token(other.refresh_token)).access_token

    async def test_logout_all(self, auth):
        registered = await _register(auth)
        other = await auth.login("a@x.com", PASSWORD)

        assert await auth.logout_all(registered.user["id"]) == 2
        for token in (registered.refresh_token, other.refresh_token):
            with pytest.raises(TokenInvalidError):
                await auth.refresh_token(token)
        assert await auth.logout_all(registered.user["id"]) == 0


class TestVerify:
    async def test_verify_returns_claims(self, auth):
        registered = await _register(auth)
        claims = await auth.verify_token(registered.access_token)
        assert claims.user_id == registered.user["id"]
        assert claims.username == "alice"

    async def test_verify_rejects_garbage(self, auth):
        with pytest.raises(TokenInvalidError):
            await auth.verify_token("garbage")

    async def test_verify_rejects_expired_as_invalid(self, auth, tokens):
        tokens.clock.frozen = 1_700_000_000
        token = tokens.issue_access("u1", "a@x.io", "a", [], 60)
        tokens.clock.frozen = 1_700_000_060
        with pytest.raises(TokenInvalidError):
            await auth.verify_token(token)

    async def test_verify_rejects_refresh_token(self, auth, tokens):
        with pytest.raises(TokenInvalidError):
            await auth.verify_token(tokens.issue_refresh("u1", 60))


class TestChangePassword:
    async def test_change_password_ends_every_session(self, auth, publisher):
        registered = await _register(auth)
        other = await auth.login("a@x.com", PASSWORD)

        await auth.change_password(registered.user["id"], PASSWORD, NEW_PASSWORD)

        for token in (registered.refresh_token, other.refresh_token):
            with pytest.raises(TokenInvalidError):
                await auth.refresh_token(token)
        with pytest.raises(InvalidCredentialsError):
            await auth.login("a@x.com", PASSWORD)
        assert (await auth.login("a@x.com", NEW_PASSWORD)).access_token
        assert "user.password_changed" in publisher.types()

    async def test_wrong_current_password(self, auth, store):
        registered = await _register(auth)
        before = store.get_user(registered.user["id"]).password_hash

        with pytest.raises(InvalidCredentialsError):
            await auth.change_password(registered.user["id"], "Nope1!nope", NEW_PASSWORD)
        assert store.get_user(registered.user["id"]).password_hash == before

    async def test_weak_new_password_keeps_sessions(self, auth):
        registered = await _register(auth)
        with pytest.raises(WeakPasswordError):
            await auth.change_password(registered.user["id"], PASSWORD, "short")
        assert (await auth.refresh_token(registered.refresh_token)).access_token

    async def test_unknown_user(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.change_password("missing", PASSWORD, NEW_PASSWORD)

    async def test_well_formed_unknown_id(self, auth):
        with pytest.raises(UserNotFoundError):
            await auth.change_password(
                "00000000-0000-0000-0000-000000000000", PASSWORD, NEW_PASSWORD
            )

    async def test_only_the_password_column_changes(self, racing_auth, store, hasher):
        registered = await _register(racing_auth)
        user_id = registered.user["id"]

        def deactivate():
            user = store.get_user(user_id)
            user.is_active = False
            store.update_user(user)

        hasher.after_verify = deactivate
        await racing_auth.change_password(user_id, PASSWORD, NEW_PASSWORD)

        stored = store.get_user(user_id)
        assert stored.is_active is False
        assert hasher.verify(NEW_PASSWORD, stored.password_hash)

    async def test_concurrent_change_wins(self, racing_auth, store, hasher):
        registered = await _register(racing_auth)
        user_id = registered.user["id"]
        other = "Cc3#cccccc"
        hasher.after_verify = lambda: store.update_password_hash(user_id, hasher.hash(other))

        with pytest.raises(InvalidCredentialsError):
            await racing_auth.change_password(user_id, PASSWORD, NEW_PASSWORD)
        assert hasher.verify(other, store.get_user(user_id).password_hash)
        assert (await racing_auth.refresh_token(registered.refresh_token)).access_token

    async def test_session_purge_failure_is_not_fatal(self, auth, store):
        registered = await _register(auth)
        store.failing = {"delete_user_sessions"}
        await auth.change_password(registered.user["id"], PASSWORD, NEW_PASSWORD)
        store.failing = set()
        assert (await auth.login("a@x.com", NEW_PASSWORD)).access_token


class TestSessionMaintenance:
    async def test_list_sessions(self, auth):
        registered = await _register(auth)
        await auth.login("a@x.com", PASSWORD)
        sessions = await auth.list_sessions(registered.user["id"])
        assert len(sessions) == 2

    async def test_cleanup_expired_sessions(self, auth, store):
        registered = await _register(auth)
        session = store.get_session_by_refresh_token(registered.refresh_token)
        session.expires_at = utcnow() - timedelta(minutes=1)
        store.update_session(session)
        await auth.login("a@x.com", PASSWORD)

        assert await auth.cleanup_expired_sessions() == 1
        assert await auth.cleanup_expired_sessions() == 0
