"""Unit tests for the auth service.

Covers:
- Password hashing and the access token codec
- Registration, login and the login lockout
- Refresh rotation and logout
- Email verification and password reset, including atomic consumption
"""

import asyncio
import threading

import pytest

from authcore.service.errors import ErrorKind
from authcore.service.passwords import CredentialHasher
from authcore.service.tokens import TokenCodec
from authcore.storage.models import TokenType


@pytest.fixture
def auth(runtime):
    return runtime.auth


@pytest.fixture
def registered(auth, password):
    """Register a default account and return its RegisterResult."""
    outcome = asyncio.run(
        auth.register({"email": "alice@example.com", "username": "alice", "password": password})
    )
    assert outcome.ok
    return outcome.value


class TestCredentialHasher:
    """Tests for argon2id password hashing."""

    def test_hash_is_not_plaintext_and_verifies(self):
        """The stored hash differs from the password and verifies it."""
        hasher = CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)
        password_hash = hasher.hash("hunter2-hunter2")

        assert password_hash != "hunter2-hunter2"
        assert password_hash.startswith("$argon2id$")
        assert hasher.verify(password_hash, "hunter2-hunter2")
        assert not hasher.verify(password_hash, "wrong-password")

    def test_same_password_hashes_differently(self):
        """Salting gives distinct hashes for the same password."""
        hasher = CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)

        assert hasher.hash("same-password") != hasher.hash("same-password")

    def test_garbage_hash_is_a_mismatch(self):
        """A malformed stored hash never verifies and never raises."""
        hasher = CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)

        assert hasher.verify("not-a-hash", "anything") is False


class TestTokenCodec:
    """Tests for access token signing and opaque token hashing."""

    def test_access_token_round_trip(self, settings, clock):
        """A freshly signed token yields its subject."""
        codec = TokenCodec(settings, clock)
        token, expires_at = codec.sign_access("user-123")

        assert token.count(".") == 2
        assert expires_at == clock() + codec.access_ttl
        outcome = codec.verify_access(token)
        assert outcome.ok
        assert outcome.value == "user-123"

    def test_access_token_expires_at_exact_instant(self, settings, clock):
        """A token presented exactly at its expiry instant is rejected."""
        codec = TokenCodec(settings, clock)
        token, _ = codec.sign_access("user-123")

        clock.advance(minutes=settings.access_token_ttl_minutes, seconds=-1)
        assert codec.verify_access(token).ok
        clock.advance(seconds=1)
        outcome = codec.verify_access(token)
        assert not outcome.ok
        assert outcome.failure.kind == ErrorKind.INVALID_TOKEN

    def test_tampered_signature_rejected(self, settings, clock):
        """Changing the signature invalidates the token."""
        codec = TokenCodec(settings, clock)
        token, _ = codec.sign_access("user-123")
        header, payload, signature = token.split(".")
        tampered = f"{header}.{payload}.{signature[::-1]}"

        assert not codec.verify_access(tampered).ok
        assert not codec.verify_access("not-a-jwt").ok

    def test_non_ascii_segments_rejected(self, settings, clock):
        """Latin-1 bytes from a header are an invalid token, not a crash."""
        codec = TokenCodec(settings, clock)
        token, _ = codec.sign_access("user-123")
        header, payload, _ = token.split(".")

        for candidate in (f"{header}.{payload}.ééé", f"{header}.{payload}é.sig", f"é{header}.{payload}.sig"):
            outcome = codec.verify_access(candidate)
            assert not outcome.ok
            assert outcome.failure.kind == ErrorKind.INVALID_TOKEN

    def test_foreign_secret_rejected(self, settings, clock):
        """Tokens signed with another secret do not verify."""
        other = TokenCodec(settings.model_copy(update={"jwt_secret": "another-secret-another-secret-123"}), clock)
        token, _ = other.sign_access("user-123")

        assert not TokenCodec(settings, clock).verify_access(token).ok

    def test_opaque_tokens_are_random_and_hashed(self, settings):
        """Opaque tokens are hex strings and their digest is a sha256 hex string."""
        codec = TokenCodec(settings)
        first = codec.generate_opaque()
        second = codec.generate_opaque()

        assert first != second
        assert len(first) == settings.opaque_token_bytes * 2
        digest = codec.hash_opaque(first)
        assert len(digest) == 64
        assert digest == codec.hash_opaque(first)
        assert digest != first


class TestRegister:
    """Tests for account registration."""

    @pytest.mark.asyncio
    async def test_register_issues_tokens_and_stores_hashes(self, auth, memory_store, password):
        """Registration returns tokens while the store keeps only their hashes."""
        outcome = await auth.register(
            {"email": "Bob@Example.com", "username": "bob", "password": password}
        )

        assert outcome.ok
        result = outcome.value
        assert result.user.email == "bob@example.com"
        assert result.user.password_hash != password
        assert result.verify_token
        stored = memory_store.get_token_by_hash(auth.codec.hash_opaque(result.tokens.refresh_token))
        assert stored is not None
        assert stored.type == TokenType.REFRESH
        assert all(t.token_hash != result.tokens.refresh_token for t in memory_store.tokens.values())
        verify = memory_store.get_token_by_hash(auth.codec.hash_opaque(result.verify_token))
        assert verify.type == TokenType.EMAIL_VERIFY

    @pytest.mark.asyncio
    async def test_duplicate_email_or_username_rejected(self, auth, password):
        """A second account with the same email or username fails USER_EXISTS."""
        await auth.register({"email": "dup@example.com", "username": "dup", "password": password})

        by_email = await auth.register(
            {"email": "dup@example.com", "username": "other", "password": password}
        )
        by_username = await auth.register(
            {"email": "other@example.com", "username": "dup", "password": password}
        )

        assert by_email.failure.kind == ErrorKind.USER_EXISTS
        assert by_username.failure.kind == ErrorKind.USER_EXISTS

    @pytest.mark.asyncio
    async def test_invalid_input_rejected_before_storage(self, auth, memory_store):
        """Malformed input fails validation and writes nothing."""
        outcome = await auth.register({"email": "not-an-email", "username": "x", "password": "short"})

        assert outcome.failure.kind == ErrorKind.VALIDATION_ERROR
        fields = {d["field"] for d in outcome.failure.details}
        assert {"email", "username", "password"} <= fields
        assert memory_store.users == {}
        assert memory_store.tokens == {}

    @pytest.mark.asyncio
    async def test_verify_token_hidden_when_not_exposed(self, runtime, password):
        """Without token exposure the plaintext verify token is withheld."""
        runtime.auth.settings = runtime.settings.model_copy(update={"expose_tokens": False})

        outcome = await runtime.auth.register(
            {"email": "quiet@example.com", "username": "quiet", "password": password}
        )

        assert outcome.ok
        assert outcome.value.verify_token is None

    @pytest.mark.asyncio
    async def test_token_write_failure_leaves_no_account(self, auth, memory_store, password, monkeypatch):
        """When the initial tokens cannot be stored the account is not created either."""

        def _boom(token):
            raise RuntimeError("token table unavailable")

        monkeypatch.setattr(memory_store, "_insert_token", _boom)
        with pytest.raises(RuntimeError):
            await auth.register({"email": "x@example.com", "username": "xavier", "password": password})
        monkeypatch.undo()

        assert memory_store.get_user_by_email("x@example.com") is None
        assert memory_store.tokens == {}
        retry = await auth.register({"email": "x@example.com", "username": "xavier", "password": password})
        assert retry.ok


class TestLogin:
    """Tests for password login and lockout."""

    @pytest.mark.asyncio
    async def test_login_succeeds_with_correct_password(self, auth, registered, password):
        """Correct credentials return a token pair for the account."""
        outcome = await auth.login({"email": "ALICE@example.com", "password": password})

        assert outcome.ok
        assert outcome.value.user.id == registered.user.id
        assert auth.codec.verify_access(outcome.value.tokens.access_token).value == registered.user.id

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_email_look_alike(self, auth, registered):
        """Both failures use the same kind and message."""
        wrong = await auth.login({"email": "alice@example.com", "password": "wrong-password"})
        unknown = await auth.login({"email": "nobody@example.com", "password": "wrong-password"})

        assert wrong.failure.kind == ErrorKind.INVALID_CREDENTIALS
        assert unknown.failure.kind == ErrorKind.INVALID_CREDENTIALS
        assert wrong.failure.message == unknown.failure.message

    @pytest.mark.asyncio
    async def test_outdated_hash_upgraded_on_login(self, auth, memory_store, password):
        """A hash made with other argon2 parameters is replaced after a successful login."""
        legacy = CredentialHasher(time_cost=2, memory_cost=8, parallelism=1)
        user = memory_store.create_user("legacy@example.com", legacy.hash(password), username="legacy")
        assert auth.hasher.needs_rehash(user.password_hash)

        outcome = await auth.login({"email": "legacy@example.com", "password": password})

        assert outcome.ok
        upgraded = memory_store.get_user(user.id).password_hash
        assert not auth.hasher.needs_rehash(upgraded)
        assert auth.hasher.verify(upgraded, password)

    @pytest.mark.asyncio
    async def test_lockout_after_threshold(self, auth, registered, password, settings):
        """The fifth failure locks the account; the sixth attempt reports LOGIN_LOCKED."""
        for _ in range(settings.login_lockout_threshold):
            outcome = await auth.login({"email": "alice@example.com", "password": "wrong-password"})
            assert outcome.failure.kind == ErrorKind.INVALID_CREDENTIALS

        locked = await auth.login({"email": "alice@example.com", "password": password})

        assert locked.failure.kind == ErrorKind.LOGIN_LOCKED
        assert locked.failure.retry_after == settings.login_lockout_base_seconds

    @pytest.mark.asyncio
    async def test_lock_expires_and_success_clears_failures(self, auth, registered, password, settings, clock):
        """After the lock elapses a correct password logs in and resets the counter."""
        for _ in range(settings.login_lockout_threshold):
            await auth.login({"email": "alice@example.com", "password": "wrong-password"})

        clock.advance(seconds=settings.login_lockout_base_seconds)
        assert (await auth.login({"email": "alice@example.com", "password": password})).ok

        for _ in range(settings.login_lockout_threshold - 1):
            await auth.login({"email": "alice@example.com", "password": "wrong-password"})
        assert (await auth.login({"email": "alice@example.com", "password": password})).ok


class TestRefreshAndLogout:
    """Tests for refresh rotation and logout."""

    @pytest.mark.asyncio
    async def test_refresh_rotates_token(self, auth, registered):
        """A refresh returns a new pair and the old token cannot be replayed."""
        old = registered.tokens.refresh_token

        first = await auth.refresh({"refresh_token": old})
        replay = await auth.refresh({"refresh_token": old})

        assert first.ok
        assert first.value.refresh_token != old
        assert replay.failure.kind == ErrorKind.INVALID_TOKEN
        assert (await auth.refresh({"refresh_token": first.value.refresh_token})).ok

    @pytest.mark.asyncio
    async def test_refresh_token_expires_at_exact_instant(self, auth, registered, settings, clock):
        """A refresh token presented exactly at its expiry is rejected."""
        clock.advance(days=settings.refresh_token_ttl_days)

        outcome = await auth.refresh({"refresh_token": registered.tokens.refresh_token})

        assert outcome.failure.kind == ErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_refresh_rejects_other_token_types(self, auth, registered):
        """An email verification token cannot be used as a refresh token."""
        outcome = await auth.refresh({"refresh_token": registered.verify_token})

        assert outcome.failure.kind == ErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, auth, registered):
        """Logout acknowledges repeated and unknown tokens, and the token stops working."""
        token = registered.tokens.refresh_token

        assert (await auth.logout({"refresh_token": token})).value is True
        assert (await auth.logout({"refresh_token": token})).value is True
        assert (await auth.logout({"refresh_token": "unknown-token"})).ok
        assert (await auth.refresh({"refresh_token": token})).failure.kind == ErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_refresh_fails_when_account_deleted(self, auth, registered, memory_store):
        """Deleting an account also removes its refresh tokens."""
        memory_store.delete_user(registered.user.id)

        outcome = await auth.refresh({"refresh_token": registered.tokens.refresh_token})

        assert outcome.failure.kind == ErrorKind.INVALID_TOKEN


class TestEmailVerification:
    """Tests for email verification tokens."""

    @pytest.mark.asyncio
    async def test_verify_marks_account_once(self, auth, registered, memory_store):
        """Verification sets the timestamp and the token cannot be reused."""
        first = await auth.verify_email({"token": registered.verify_token})
        second = await auth.verify_email({"token": registered.verify_token})

        assert first.ok
        assert memory_store.get_user(registered.user.id).email_verified
        assert second.failure.kind == ErrorKind.INVALID_TOKEN

    @pytest.mark.asyncio
    async def test_failed_account_update_leaves_token_unused(self, auth, registered, memory_store, monkeypatch):
        """If the account update fails the token consumption is rolled back."""

        def _boom(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(memory_store, "_apply_user_update", _boom)
        with pytest.raises(RuntimeError):
            await auth.verify_email({"token": registered.verify_token})
        monkeypatch.undo()

        token = memory_store.get_token_by_hash(auth.codec.hash_opaque(registered.verify_token))
        assert token.used_at is None
        assert not token.revoked
        assert not memory_store.get_user(registered.user.id).email_verified
        assert (await auth.verify_email({"token": registered.verify_token})).ok

    def test_concurrent_consumption_has_one_winner(self, auth, registered, memory_store, clock):
        """Many threads consuming one token produce exactly one success."""
        token_hash = auth.codec.hash_opaque(registered.verify_token)
        results = []
        barrier = threading.Barrier(8)

        def _consume():
            barrier.wait()
            results.append(
                memory_store.consume_token(
                    token_hash, TokenType.EMAIL_VERIFY, clock(), mark_email_verified=True
                )
            )

        threads = [threading.Thread(target=_consume) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len([r for r in results if r is not None]) == 1


class TestPasswordReset:
    """Tests for the password reset flow."""

    @pytest.mark.asyncio
    async def test_reset_request_for_unknown_email_looks_the_same(self, auth):
        """Unknown emails get the same acknowledgement without a token."""
        outcome = await auth.request_password_reset({"email": "ghost@example.com"})

        assert outcome.ok
        assert outcome.value.status == "sent"
        assert outcome.value.reset_token is None

    @pytest.mark.asyncio
    async def test_reset_changes_password_and_revokes_sessions(self, auth, registered, password, memory_store):
        """A reset swaps the password, consumes the token and signs out every session."""
        requested = await auth.request_password_reset({"email": "alice@example.com"})
        reset_token = requested.value.reset_token

        outcome = await auth.reset_password({"token": reset_token, "new_password": "brand-new-password"})

        assert outcome.ok
        assert (await auth.login({"email": "alice@example.com", "password": password})).failure.kind == (
            ErrorKind.INVALID_CREDENTIALS
        )
        assert (await auth.login({"email": "alice@example.com", "password": "brand-new-password"})).ok
        replay = await auth.reset_password({"token": reset_token, "new_password": "another-password"})
        assert replay.failure.kind == ErrorKind.INVALID_TOKEN
        assert (await auth.refresh({"refresh_token": registered.tokens.refresh_token})).failure.kind == (
            ErrorKind.INVALID_TOKEN
        )

    @pytest.mark.asyncio
    async def test_reset_clears_lockout(self, auth, registered, settings):
        """A completed reset lifts an active login lockout."""
        for _ in range(settings.login_lockout_threshold):
            await auth.login({"email": "alice@example.com", "password": "wrong-password"})
        requested = await auth.request_password_reset({"email": "alice@example.com"})

        await auth.reset_password({"token": requested.value.reset_token, "new_password": "brand-new-password"})

        assert (await auth.login({"email": "alice@example.com", "password": "brand-new-password"})).ok

    @pytest.mark.asyncio
    async def test_expired_reset_token_rejected(self, auth, registered, settings, clock):
        """A reset token presented at its expiry instant is rejected."""
        requested = await auth.request_password_reset({"email": "alice@example.com"})
        clock.advance(minutes=settings.password_reset_ttl_minutes)

        outcome = await auth.reset_password(
            {"token": requested.value.reset_token, "new_password": "brand-new-password"}
        )

        assert outcome.failure.kind == ErrorKind.INVALID_TOKEN


class TestBearerAuthentication:
    """Tests for resolving a principal from an Authorization header."""

    @pytest.mark.asyncio
    async def test_valid_bearer_resolves_principal(self, auth, registered):
        """A valid access token resolves to the account's principal."""
        outcome = await auth.authenticate_bearer(f"Bearer {registered.tokens.access_token}")

        assert outcome.ok
        assert outcome.value.user_id == registered.user.id
        assert outcome.value.role == "user"

    @pytest.mark.asyncio
    async def test_bad_headers_are_unauthorized(self, auth, registered):
        """Missing, malformed and non-bearer headers all fail UNAUTHORIZED."""
        for header in (None, "", "Bearer", "Basic abc", "Bearer not-a-token"):
            outcome = await auth.authenticate_bearer(header)
            assert outcome.failure.kind == ErrorKind.UNAUTHORIZED

    @pytest.mark.asyncio
    async def test_deleted_account_is_unauthorized(self, auth, registered, memory_store):
        """A valid token for a deleted account is rejected."""
        memory_store.delete_user(registered.user.id)

        outcome = await auth.authenticate_bearer(f"Bearer {registered.tokens.access_token}")

        assert outcome.failure.kind == ErrorKind.UNAUTHORIZED
