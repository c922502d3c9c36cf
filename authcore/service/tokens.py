from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenReuseError,
)
from authcore.storage.common import AuthStore

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
PURPOSE = "purpose"

PASSWORD_RESET = "password-reset"
EMAIL_VERIFICATION = "email-verification"
PURPOSES = frozenset({PASSWORD_RESET, EMAIL_VERIFICATION})


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
        }


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    token_type: str
    jti: str
    issued_at: int
    expires_at: int
    purpose: Optional[str] = None
    version: int = 0
    payload: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def expires_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)


class TokenService:
    """Issue, verify, rotate and revoke HS256 tokens.

    Access tokens are verified statelessly. Refresh and purpose tokens are
    additionally checked against the store's invalidated-token registry, and
    refresh tokens against the owner's ``token_version``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._secret = settings.jwt_secret.encode()
        self._purpose_ttls = {
            PASSWORD_RESET: settings.password_reset_token_expiry,
            EMAIL_VERIFICATION: settings.email_verification_token_expiry,
        }

    # wire format
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        """Return the verified payload; expiry is checked separately."""
        if not isinstance(token, str) or not token.isascii():
            raise TokenInvalidError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError("malformed token")

        # reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidError("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            raise TokenInvalidError("invalid token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise TokenInvalidError("invalid token issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise TokenInvalidError("invalid token audience")
        return payload

    def _claims(self, token: str, expected_type: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        if payload.get("token_type") != expected_type:
            raise TokenInvalidError("unexpected token type")
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub:
            raise TokenInvalidError("token subject missing")
        try:
            exp = int(payload["exp"])
            iat = int(payload.get("iat", 0))
            version = int(payload.get("ver", 0))
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("malformed token claims")
        if exp <= self._clock() - self.settings.token_leeway_seconds:
            raise TokenExpiredError("token expired")
        return TokenClaims(
            user_id=sub,
            token_type=expected_type,
            jti=str(payload.get("jti", "")),
            issued_at=iat,
            expires_at=exp,
            purpose=payload.get("purpose"),
            version=version,
            payload=payload,
        )

    def _issue(self, user_id: str, token_type: str, ttl: int, **extra: Any) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "token_type": token_type,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + ttl,
        }
        payload.update(extra)
        return self._encode_jwt(payload)

    # issuance
    def issue_access_token(self, user_id: str) -> str:
        return self._issue(user_id, ACCESS, self.settings.access_token_expiry)

    def issue_refresh_token(self, user_id: str, token_version: int = 0) -> str:
        return self._issue(
            user_id, REFRESH, self.settings.refresh_token_expiry, ver=token_version
        )

    def issue_token_pair(self, user_id: str, token_version: int = 0) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access_token(user_id),
            refresh_token=self.issue_refresh_token(user_id, token_version),
            expires_in=self.settings.access_token_expiry,
        )

    def issue_purpose_token(self, user_id: str, purpose: str) -> str:
        if purpose not in PURPOSES:
            raise ValueError(f"unknown token purpose: {purpose}")
        return self._issue(
            user_id, PURPOSE, self._purpose_ttls[purpose], purpose=purpose
        )

    # verification
    def verify_access_token(self, token: str) -> TokenClaims:
        return self._claims(token, ACCESS)

    async def verify_refresh_token(self, token: str) -> TokenClaims:
        claims = self._claims(token, REFRESH)
        if self.store.is_token_invalidated(token):
            raise TokenReuseError("refresh token reuse detected", user_id=claims.user_id)
        user = self.store.get_user_by_id(claims.user_id)
        if not user or user.token_version != claims.version:
            raise TokenInvalidError("refresh token revoked")
        return claims

    async def refresh(self, refresh_token: str) -> TokenPair:
        claims = await self.verify_refresh_token(refresh_token)
        # the registry insert is the compare-and-set: only one caller wins
        if not self.store.consume_token(refresh_token, claims.expires_at_datetime):
            raise TokenReuseError("refresh token reuse detected", user_id=claims.user_id)
        logger.info("refresh_token_rotated", user_id=claims.user_id)
        return self.issue_token_pair(claims.user_id, claims.version)

    async def logout(self, refresh_token: str) -> None:
        try:
            payload = self._decode_jwt(refresh_token)
        except TokenInvalidError:
            # a token we never signed can never be accepted
            logger.info("logout_unrecognized_token")
            return
        expires_at = None
        try:
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            pass
        self.store.invalidate_token(refresh_token, expires_at)
        logger.info("refresh_token_invalidated", user_id=payload.get("sub"))

    async def consume_purpose_token(self, token: str, purpose: str) -> TokenClaims:
        claims = self._claims(token, PURPOSE)
        if claims.purpose != purpose:
            raise TokenInvalidError("token purpose mismatch")
        if not self.store.consume_token(token, claims.expires_at_datetime):
            raise TokenInvalidError("token already used")
        return claims

    async def revoke_user_tokens(self, user_id: str) -> int:
        version = self.store.bump_token_version(user_id)
        logger.info("user_tokens_revoked", user_id=user_id, version=version)
        return version
