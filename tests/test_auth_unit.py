"""Unit tests for the auth service.

Tests for:
- Registration and duplicate detection
- Login, enumeration resistance and hash upgrades
- Password change, reset and confirmation
- Email verification
- Refresh, logout and reuse handling
- Profile reads and merges
"""

from datetime import datetime, timedelta, timezone

import pytest

from authcore.config import PasswordOptions
from authcore.service.auth import INVALID_CREDENTIALS, RESET_REQUESTED, AuthService
from authcore.service.email import EmailNotifier
from authcore.service.errors import (
    AdapterError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    TokenExpiredError,
    TokenInvalidError,
    TokenReuseError,
    ValidationError,
)
from authcore.service.passwords import PasswordHasher
from authcore.storage.errors import StorageError


async def _registered(auth_service, email="user@example.com", password="Password123", **kwargs):
    kwargs.setdefault("auto_verify", True)
    return await auth_service.register(email, password, **kwargs)


class TestRegister:
    """Tests for registration."""

    async def test_auto_verify_returns_tokens(self, auth_service):
        result = await _registered(auth_service, "New@Example.com", profile={"name": "N"})

        assert result.user.email == "new@example.com"
        assert result.user.email_verified is True
        assert result.user.profile == {"name": "N"}
        assert result.tokens is not None
        assert not hasattr(result.user, "password_hash")

    async def test_without_auto_verify_sends_verification(self, auth_service, outbox):
        """Unverified registrations get no tokens and one verification email."""
        result = await auth_service.register("pending@example.com", "Password123")

        assert result.tokens is None
        assert result.user.email_verified is False
        assert result.verification_token is None
        assert len(outbox.messages) == 1
        message = outbox.messages[0]
        assert message.to == "pending@example.com"
        assert message.from_email == "noreply@example.com"
        assert outbox.last_token_for("pending@example.com") in message.html

    async def test_duplicate_email_conflicts_case_insensitively(self, auth_service):
        await _registered(auth_service, "a@x.com")

        with pytest.raises(ConflictError):
            await _registered(auth_service, "A@x.com")

    async def test_weak_password_lists_violations(self, auth_service, memory_store):
        with pytest.raises(ValidationError) as excinfo:
            await auth_service.register("weak@example.com", "password")

        assert excinfo.value.detail["violations"] == ["missing_uppercase", "missing_number"]
        assert memory_store.get_user_by_email("weak@example.com") is None

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@b", "two@@example.com", None])
    async def test_invalid_email_rejected(self, auth_service, email):
        with pytest.raises(ValidationError):
            await auth_service.register(email, "Password123")

    async def test_profile_must_be_object(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register("p@example.com", "Password123", profile=["x"])

    async def test_stored_hash_is_not_plaintext(self, auth_service, memory_store):
        await _registered(auth_service)

        stored = memory_store.get_user_by_email("user@example.com")
        assert stored.password_hash != "Password123"
        assert stored.password_hash.startswith("$argon2id$")

    async def test_custom_policy_from_settings(self, memory_store, settings, hasher):
        strict = settings.model_copy(
            update={"password_options": PasswordOptions(require_special_chars=True)}
        )
        service = AuthService(memory_store, strict, hasher=hasher)

        with pytest.raises(ValidationError):
            await service.register("s@example.com", "Password123", auto_verify=True)


class TestLogin:
    """Tests for credential login."""

    async def test_success_updates_last_login(self, auth_service, token_service):
        registered = await _registered(auth_service)
        assert registered.user.last_login_at is None

        result = await auth_service.login("USER@example.com", "Password123")

        assert result.user.id == registered.user.id
        assert result.user.last_login_at is not None
        assert token_service.verify_access_token(result.tokens.access_token).user_id == result.user.id

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, auth_service):
        await _registered(auth_service)

        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("ghost@example.com", "Password123")
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login("user@example.com", "Password999")

        assert type(unknown.value) is type(wrong.value)
        assert unknown.value.message == wrong.value.message == INVALID_CREDENTIALS
        assert unknown.value.error_code == wrong.value.error_code

    async def test_unknown_email_still_runs_a_hash(self, auth_service, hasher, monkeypatch):
        calls = []
        monkeypatch.setattr(hasher, "dummy_verify", lambda pw: calls.append(pw))

        with pytest.raises(AuthenticationError):
            await auth_service.login("ghost@example.com", "Password123")
        assert calls == ["Password123"]

    @pytest.mark.parametrize("email,password", [("", ""), ("user@example.com", ""), ("", "Password123")])
    async def test_missing_fields_fail_like_bad_credentials(self, auth_service, email, password):
        await _registered(auth_service)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth_service.login(email, password)
        assert excinfo.value.message == INVALID_CREDENTIALS
        assert excinfo.value.error_code == "unauthorized"

    async def test_unverified_allowed_by_default(self, auth_service):
        await auth_service.register("pending@example.com", "Password123")

        assert (await auth_service.login("pending@example.com", "Password123")).tokens

    async def test_verification_can_be_required(self, memory_store, settings, hasher, outbox):
        strict = settings.model_copy(update={"require_email_verification": True})
        service = AuthService(
            memory_store, strict, hasher=hasher, notifier=EmailNotifier(strict.email_options, outbox)
        )
        await service.register("pending@example.com", "Password123")

        with pytest.raises(AuthenticationError) as excinfo:
            await service.login("pending@example.com", "Password123")
        assert excinfo.value.error_code == "email_not_verified"

    async def test_weak_hash_upgraded_on_login(self, memory_store, settings, auth_service):
        await _registered(auth_service)
        before = memory_store.get_user_by_email("user@example.com").password_hash
        stronger = AuthService(
            memory_store,
            settings,
            hasher=PasswordHasher(time_cost=2, memory_cost=16, parallelism=1),
        )

        await stronger.login("user@example.com", "Password123")

        after = memory_store.get_user_by_email("user@example.com").password_hash
        assert after != before
        assert "t=2" in after

    async def test_rate_limited(self, memory_store, settings, hasher):
        limited = settings.model_copy(update={"login_rate_limit_per_minute": 2})
        service = AuthService(memory_store, limited, hasher=hasher)

        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await service.login("ghost@example.com", "Password123")
        with pytest.raises(RateLimitedError) as excinfo:
            await service.login("ghost@example.com", "Password123")
        assert excinfo.value.detail["retry_after"] >= 1


class TestPasswordChange:
    """Tests for authenticated password change."""

    async def test_change_requires_current_password(self, auth_service):
        user = (await _registered(auth_service)).user

        with pytest.raises(AuthenticationError):
            await auth_service.change_password(user.id, "Wrong1234", "NewPassword1")

        await auth_service.change_password(user.id, "Password123", "NewPassword1")
        assert (await auth_service.login("user@example.com", "NewPassword1")).tokens
        with pytest.raises(AuthenticationError):
            await auth_service.login("user@example.com", "Password123")

    async def test_new_password_must_pass_policy(self, auth_service):
        user = (await _registered(auth_service)).user

        with pytest.raises(ValidationError):
            await auth_service.change_password(user.id, "Password123", "short")

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.change_password("missing", "Password123", "NewPassword1")


class TestPasswordReset:
    """Tests for the reset request and confirmation."""

    async def test_response_does_not_reveal_account_existence(self, auth_service, outbox):
        await _registered(auth_service)

        known = await auth_service.reset_password("user@example.com")
        unknown = await auth_service.reset_password("ghost@example.com")

        assert known == unknown
        assert known.message == RESET_REQUESTED
        assert known.reset_token is None
        assert [m.to for m in outbox.messages] == ["user@example.com"]

    async def test_token_exposed_only_in_test_mode(self, memory_store, settings, hasher, outbox):
        service = AuthService(
            memory_store,
            settings.model_copy(update={"test_mode": True}),
            hasher=hasher,
            notifier=EmailNotifier(settings.email_options, outbox),
        )
        await _registered(service)

        result = await service.reset_password("user@example.com")

        assert result.reset_token == outbox.last_token_for("user@example.com")

    async def test_invalid_email_format(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.reset_password("nope")

    async def test_confirm_sets_password_and_revokes_sessions(self, auth_service, outbox):
        """Every refresh token issued before the reset stops working."""
        registered = await _registered(auth_service)
        first = (await auth_service.login("user@example.com", "Password123")).tokens

        await auth_service.reset_password("user@example.com")
        token = outbox.last_token_for("user@example.com")
        user = await auth_service.reset_password_confirm(token, "BrandNew123")

        assert user.id == registered.user.id
        for old in (registered.tokens.refresh_token, first.refresh_token):
            with pytest.raises(TokenInvalidError):
                await auth_service.refresh_token(old)
        fresh = await auth_service.login("user@example.com", "BrandNew123")
        assert await auth_service.refresh_token(fresh.tokens.refresh_token)

    async def test_confirm_token_is_single_use(self, auth_service, outbox):
        await _registered(auth_service)
        await auth_service.reset_password("user@example.com")
        token = outbox.last_token_for("user@example.com")

        await auth_service.reset_password_confirm(token, "BrandNew123")
        with pytest.raises(TokenInvalidError):
            await auth_service.reset_password_confirm(token, "Another123")

    async def test_policy_failure_does_not_burn_token(self, auth_service, outbox):
        await _registered(auth_service)
        await auth_service.reset_password("user@example.com")
        token = outbox.last_token_for("user@example.com")

        with pytest.raises(ValidationError):
            await auth_service.reset_password_confirm(token, "weak")
        assert await auth_service.reset_password_confirm(token, "BrandNew123")

    async def test_expired_token(self, auth_service, outbox, clock):
        await _registered(auth_service)
        await auth_service.reset_password("user@example.com")
        clock.advance(3601)

        with pytest.raises(TokenExpiredError):
            await auth_service.reset_password_confirm(
                outbox.last_token_for("user@example.com"), "BrandNew123"
            )

    async def test_verification_token_cannot_reset(self, auth_service, outbox):
        await auth_service.register("pending@example.com", "Password123")

        with pytest.raises(TokenInvalidError):
            await auth_service.reset_password_confirm(
                outbox.last_token_for("pending@example.com"), "BrandNew123"
            )


class TestEmailVerification:
    """Tests for verification tokens."""

    async def test_verify_marks_user_and_issues_tokens(self, auth_service, outbox):
        await auth_service.register("pending@example.com", "Password123")

        result = await auth_service.verify_email(outbox.last_token_for("pending@example.com"))

        assert result.user.email_verified is True
        assert result.tokens.access_token
        assert (await auth_service.get_profile(result.user.id)).email_verified is True

    async def test_verification_token_single_use(self, auth_service, outbox):
        await auth_service.register("pending@example.com", "Password123")
        token = outbox.last_token_for("pending@example.com")
        await auth_service.verify_email(token)

        with pytest.raises(TokenInvalidError):
            await auth_service.verify_email(token)

    async def test_resend_only_for_unverified(self, auth_service, outbox):
        await auth_service.register("pending@example.com", "Password123")
        await _registered(auth_service, "done@example.com")

        await auth_service.resend_verification("pending@example.com")
        await auth_service.resend_verification("done@example.com")
        await auth_service.resend_verification("ghost@example.com")

        assert [m.to for m in outbox.messages] == ["pending@example.com", "pending@example.com"]


class TestTokens:
    """Refresh, logout and validation through the service."""

    async def test_reuse_revokes_every_session(self, auth_service):
        """After reuse is detected the legitimately rotated token dies too."""
        r0 = (await _registered(auth_service)).tokens.refresh_token
        rotated = await auth_service.refresh_token(r0)

        with pytest.raises(TokenReuseError):
            await auth_service.refresh_token(r0)
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh_token(rotated.refresh_token)

    async def test_reuse_revocation_can_be_disabled(self, memory_store, settings, hasher):
        service = AuthService(
            memory_store,
            settings.model_copy(update={"revoke_sessions_on_token_reuse": False}),
            hasher=hasher,
        )
        r0 = (await _registered(service)).tokens.refresh_token
        rotated = await service.refresh_token(r0)

        with pytest.raises(TokenReuseError):
            await service.refresh_token(r0)
        assert await service.refresh_token(rotated.refresh_token)

    async def test_logout_then_refresh_is_reuse(self, auth_service):
        r0 = (await _registered(auth_service)).tokens.refresh_token

        await auth_service.logout(r0)
        await auth_service.logout(r0)
        with pytest.raises(TokenReuseError):
            await auth_service.refresh_token(r0)

    async def test_logout_all(self, auth_service):
        registered = await _registered(auth_service)

        await auth_service.logout_all(registered.user.id)

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh_token(registered.tokens.refresh_token)
        with pytest.raises(NotFoundError):
            await auth_service.logout_all("missing")

    async def test_validate_token(self, auth_service):
        registered = await _registered(auth_service)

        user = await auth_service.validate_token(registered.tokens.access_token)
        assert user.id == registered.user.id

        await auth_service.delete_user(user.id)
        with pytest.raises(TokenInvalidError):
            await auth_service.validate_token(registered.tokens.access_token)


class TestProfile:
    """Profile pass-through."""

    async def test_update_merges(self, auth_service):
        user = (await _registered(auth_service, profile={"name": "U", "prefs": {"a": 1}})).user

        updated = await auth_service.update_profile(user.id, {"prefs": {"b": 2}})

        assert updated.profile == {"name": "U", "prefs": {"a": 1, "b": 2}}
        assert (await auth_service.get_profile(user.id)).profile == updated.profile
        assert updated.updated_at >= user.updated_at

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.get_profile("missing")
        with pytest.raises(NotFoundError):
            await auth_service.update_profile("missing", {"a": 1})

    async def test_profile_must_be_dict(self, auth_service):
        user = (await _registered(auth_service)).user

        with pytest.raises(ValidationError):
            await auth_service.update_profile(user.id, "nope")

    async def test_delete_user(self, auth_service):
        user = (await _registered(auth_service)).user

        assert await auth_service.delete_user(user.id) is True
        assert await auth_service.delete_user(user.id) is False


class TestAdapterFailures:
    """Storage failures surface as AdapterError with context."""

    async def test_storage_error_wrapped(self, auth_service, memory_store, monkeypatch):
        def boom(*args, **kwargs):
            raise StorageError("connection refused at 10.0.0.1")

        monkeypatch.setattr(memory_store, "get_user_by_email", boom)

        with pytest.raises(AdapterError) as excinfo:
            await auth_service.login("user@example.com", "Password123")
        assert excinfo.value.detail == {"operation": "get_user_by_email"}
        assert isinstance(excinfo.value.__cause__, StorageError)

    async def test_reuse_error_not_downgraded(self, auth_service):
        r0 = (await _registered(auth_service)).tokens.refresh_token
        await auth_service.refresh_token(r0)

        with pytest.raises(TokenReuseError) as excinfo:
            await auth_service.refresh_token(r0)
        assert excinfo.value.error_code == "token_reused"


async def test_prune_invalidated_tokens_drops_expired(auth_service, memory_store):
    now = datetime.now(timezone.utc)
    memory_store.invalidate_token("expired", now - timedelta(minutes=1))
    memory_store.invalidate_token("live", now + timedelta(hours=1))

    assert await auth_service.prune_invalidated_tokens() == 1
    assert memory_store.is_token_invalidated("live")
    assert not memory_store.is_token_invalidated("expired")
