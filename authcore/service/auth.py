from __future__ import annotations

import contextlib
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from authcore.config import Settings
from authcore.logging import email_fingerprint, get_logger
from authcore.service.email import EmailNotifier
from authcore.service.errors import (
    AdapterError,
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    TokenInvalidError,
    TokenReuseError,
    ValidationError,
)
from authcore.service.passwords import PasswordHasher, PasswordPolicy
from authcore.service.rate_limit import InMemoryRateLimiter, RateLimiter
from authcore.service.tokens import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    TokenPair,
    TokenService,
)
from authcore.service.validation import validate_email
from authcore.storage.common import AuthStore, canonicalize_email
from authcore.storage.errors import ConstraintViolation, RecordNotFound, StorageError
from authcore.storage.models import PublicUser, User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid email or password"
RESET_REQUESTED = "if an account exists for that address, a reset email has been sent"
RATE_WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RegistrationResult:
    user: PublicUser
    tokens: Optional[TokenPair]
    message: str
    # populated only in test mode
    verification_token: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    user: PublicUser
    tokens: TokenPair


@dataclass(frozen=True)
class PasswordResetResult:
    message: str
    # populated only in test mode
    reset_token: Optional[str] = None


@dataclass(frozen=True)
class VerificationResult:
    user: PublicUser
    tokens: TokenPair


class AuthService:
    """Registration, login, password and email-verification flows.

    Composes the password policy and hasher, the token service, the identity
    store and a rate limiter. All collaborators are passed in; nothing is
    looked up globally.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        tokens: Optional[TokenService] = None,
        hasher: Optional[PasswordHasher] = None,
        policy: Optional[PasswordPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens or TokenService(store, settings)
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.policy = policy or PasswordPolicy(settings.password_options)
        self.rate_limiter = rate_limiter or InMemoryRateLimiter()
        self.notifier = notifier or EmailNotifier(settings.email_options)
        self.logger = logger

    @contextlib.contextmanager
    def _adapter(self, operation: str) -> Iterator[None]:
        """Wrap unexpected storage failures in :class:`AdapterError`."""
        try:
            yield
        except (ConstraintViolation, RecordNotFound):
            raise
        except StorageError as exc:
            self.logger.error(
                "storage_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AdapterError(
                "storage operation failed", detail={"operation": operation}
            ) from exc

    def _validate_email(self, email: Any) -> str:
        try:
            return validate_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from exc

    def _check_password(self, password: Any) -> None:
        if password is not None and not isinstance(password, str):
            raise ValidationError("password must be a string", detail={"field": "password"})
        result = self.policy.validate(password)
        if not result.ok:
            raise ValidationError(
                result.message,
                detail={"field": "password", "violations": result.violations},
            )

    async def _enforce_rate_limit(self, action: str, subject: str, limit: int) -> None:
        allowed, _, reset_seconds = await self.rate_limiter.check(
            f"{action}:{subject}", limit, RATE_WINDOW_SECONDS
        )
        if not allowed:
            self.logger.warning(
                "rate_limited", action=action, account=email_fingerprint(subject)
            )
            raise RateLimitedError(
                "too many requests", detail={"retry_after": max(1, reset_seconds)}
            )

    def _load_user(self, user_id: str) -> User:
        with self._adapter("get_user_by_id"):
            user = self.store.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    def _update_user(self, user_id: str, **changes: Any) -> User:
        try:
            with self._adapter("update_user"):
                return self.store.update_user(user_id, **changes)
        except RecordNotFound as exc:
            raise NotFoundError("user not found") from exc

    async def _send_verification(self, user: User) -> str:
        token = self.tokens.issue_purpose_token(user.id, EMAIL_VERIFICATION)
        await self.notifier.send_verification(user.email, token)
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    def _test_only(self, token: Optional[str]) -> Optional[str]:
        return token if self.settings.test_mode else None

    # registration / login
    async def register(
        self,
        email: str,
        password: str,
        *,
        profile: Optional[dict] = None,
        auto_verify: bool = False,
    ) -> RegistrationResult:
        canonical = self._validate_email(email)
        if profile is not None and not isinstance(profile, dict):
            raise ValidationError("profile must be an object", detail={"field": "profile"})
        self._check_password(password)
        await self._enforce_rate_limit(
            "register", canonical, self.settings.register_rate_limit_per_minute
        )
        password_hash = self.hasher.hash(password)
        try:
            with self._adapter("create_user"):
                user = self.store.create_user(
                    canonical,
                    password_hash,
                    profile=profile,
                    email_verified=auto_verify,
                )
        except ConstraintViolation as exc:
            raise ConflictError(
                "email already registered", detail={"field": "email"}
            ) from exc
        self.logger.info("user_registered", user_id=user.id, auto_verified=auto_verify)

        if auto_verify:
            return RegistrationResult(
                user=user.public(),
                tokens=self.tokens.issue_token_pair(user.id, user.token_version),
                message="registration successful",
            )
        token = await self._send_verification(user)
        return RegistrationResult(
            user=user.public(),
            tokens=None,
            message="registration successful; check your email to verify your address",
            verification_token=self._test_only(token),
        )

    async def login(self, email: str, password: str) -> LoginResult:
        if not email or not password:
            raise AuthenticationError(INVALID_CREDENTIALS)
        canonical = canonicalize_email(email)
        await self._enforce_rate_limit(
            "login", canonical, self.settings.login_rate_limit_per_minute
        )
        with self._adapter("get_user_by_email"):
            user = self.store.get_user_by_email(canonical)
        if user is None:
            self.hasher.dummy_verify(password)
            self.logger.warning(
                "login_failed", reason="unknown_account", account=email_fingerprint(canonical)
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not self.hasher.verify(password, user.password_hash):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if self.settings.require_email_verification and not user.email_verified:
            raise AuthenticationError(
                "email address not verified", error_code="email_not_verified"
            )

        changes: dict[str, Any] = {"last_login_at": utcnow()}
        if self.hasher.needs_rehash(user.password_hash):
            changes["password_hash"] = self.hasher.hash(password)
            self.logger.info("password_rehashed", user_id=user.id)
        try:
            with self._adapter("update_user"):
                user = self.store.update_user(user.id, **changes)
        except RecordNotFound as exc:
            # deleted between lookup and update
            raise AuthenticationError(INVALID_CREDENTIALS) from exc
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(
            user=user.public(),
            tokens=self.tokens.issue_token_pair(user.id, user.token_version),
        )

    # tokens
    async def refresh_token(self, refresh_token: str) -> TokenPair:
        try:
            with self._adapter("refresh_token"):
                return await self.tokens.refresh(refresh_token)
        except TokenReuseError as exc:
            self.logger.warning("refresh_token_reuse_detected", user_id=exc.user_id)
            if self.settings.revoke_sessions_on_token_reuse and exc.user_id:
                await self._revoke_after_reuse(exc.user_id)
            raise

    async def _revoke_after_reuse(self, user_id: str) -> None:
        try:
            with self._adapter("revoke_user_tokens"):
                await self.tokens.revoke_user_tokens(user_id)
        except RecordNotFound:
            self.logger.info("reuse_revocation_skipped", user_id=user_id, reason="user_deleted")

    async def logout(self, refresh_token: str) -> None:
        with self._adapter("logout"):
            await self.tokens.logout(refresh_token)

    async def logout_all(self, user_id: str) -> None:
        try:
            with self._adapter("revoke_user_tokens"):
                await self.tokens.revoke_user_tokens(user_id)
        except RecordNotFound as exc:
            raise NotFoundError("user not found") from exc

    async def validate_token(self, access_token: str) -> PublicUser:
        claims = self.tokens.verify_access_token(access_token)
        with self._adapter("get_user_by_id"):
            user = self.store.get_user_by_id(claims.user_id)
        if user is None:
            raise TokenInvalidError("token subject no longer exists")
        return user.public()

    # passwords
    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> PublicUser:
        user = self._load_user(user_id)
        if not current_password or not self.hasher.verify(
            current_password, user.password_hash
        ):
            self.logger.warning("change_password_failed", user_id=user_id)
            raise AuthenticationError("current password is incorrect")
        self._check_password(new_password)
        user = self._update_user(user_id, password_hash=self.hasher.hash(new_password))
        self.logger.info("password_changed", user_id=user_id)
        return user.public()

    async def reset_password(self, email: str) -> PasswordResetResult:
        canonical = self._validate_email(email)
        await self._enforce_rate_limit(
            "reset", canonical, self.settings.reset_rate_limit_per_minute
        )
        with self._adapter("get_user_by_email"):
            user = self.store.get_user_by_email(canonical)
        token = None
        if user is None:
            self.logger.info(
                "password_reset_unknown_account", account=email_fingerprint(canonical)
            )
        else:
            token = self.tokens.issue_purpose_token(user.id, PASSWORD_RESET)
            await self.notifier.send_password_reset(user.email, token)
            self.logger.info("password_reset_requested", user_id=user.id)
        return PasswordResetResult(message=RESET_REQUESTED, reset_token=self._test_only(token))

    async def reset_password_confirm(self, token: str, password: str) -> PublicUser:
        self._check_password(password)
        with self._adapter("consume_token"):
            claims = await self.tokens.consume_purpose_token(token, PASSWORD_RESET)
        try:
            with self._adapter("update_user"):
                user = self.store.update_user(
                    claims.user_id, password_hash=self.hasher.hash(password)
                )
            with self._adapter("revoke_user_tokens"):
                await self.tokens.revoke_user_tokens(user.id)
        except RecordNotFound as exc:
            raise TokenInvalidError("token subject no longer exists") from exc
        self.logger.info("password_reset_completed", user_id=user.id)
        return user.public()

    # email verification
    async def verify_email(self, token: str) -> VerificationResult:
        with self._adapter("consume_token"):
            claims = await self.tokens.consume_purpose_token(token, EMAIL_VERIFICATION)
        try:
            with self._adapter("update_user"):
                user = self.store.update_user(claims.user_id, email_verified=True)
        except RecordNotFound as exc:
            raise TokenInvalidError("token subject no longer exists") from exc
        self.logger.info("email_verified", user_id=user.id)
        return VerificationResult(
            user=user.public(),
            tokens=self.tokens.issue_token_pair(user.id, user.token_version),
        )

    async def resend_verification(self, email: str) -> None:
        canonical = self._validate_email(email)
        await self._enforce_rate_limit(
            "verify", canonical, self.settings.reset_rate_limit_per_minute
        )
        with self._adapter("get_user_by_email"):
            user = self.store.get_user_by_email(canonical)
        if user is None or user.email_verified:
            return
        await self._send_verification(user)

    # profile
    async def get_profile(self, user_id: str) -> PublicUser:
        return self._load_user(user_id).public()

    async def update_profile(self, user_id: str, profile: dict) -> PublicUser:
        if not isinstance(profile, dict):
            raise ValidationError("profile must be an object", detail={"field": "profile"})
        return self._update_user(user_id, profile=profile).public()

    async def delete_user(self, user_id: str) -> bool:
        with self._adapter("delete_user"):
            deleted = self.store.delete_user(user_id)
        if deleted:
            self.logger.info("user_deleted", user_id=user_id)
        return deleted

    async def prune_invalidated_tokens(self) -> int:
        with self._adapter("prune_invalidated_tokens"):
            return self.store.prune_invalidated_tokens()
