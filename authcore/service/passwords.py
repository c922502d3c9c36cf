from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from typing import List, Optional

from argon2 import PasswordHasher as Argon2PasswordHasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError

from authcore.config import PasswordOptions
from authcore.logging import get_logger

logger = get_logger(__name__)

SPECIAL_CHARS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"
_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARS) + "]")

_VIOLATION_MESSAGES = {
    "required": "password is required",
    "too_short": "password must be at least {min_length} characters long",
    "too_long": "password must be at most {max_length} characters long",
    "missing_uppercase": "password must contain at least one uppercase letter",
    "missing_lowercase": "password must contain at least one lowercase letter",
    "missing_number": "password must contain at least one number",
    "missing_special_char": "password must contain at least one special character",
}


@dataclass(frozen=True)
class PolicyResult:
    ok: bool
    violations: List[str] = field(default_factory=list)
    message: str = "password is valid"


class PasswordPolicy:
    """Pure strength check of candidate passwords against ``PasswordOptions``."""

    def __init__(self, options: Optional[PasswordOptions] = None) -> None:
        self.options = options or PasswordOptions()

    def validate(self, password: Optional[str]) -> PolicyResult:
        opts = self.options
        violations: List[str] = []
        candidate = password or ""
        if not candidate:
            violations.append("required")
        if len(candidate) < opts.min_length:
            violations.append("too_short")
        if len(candidate) > opts.max_length:
            violations.append("too_long")
        if opts.require_uppercase and not re.search(r"[A-Z]", candidate):
            violations.append("missing_uppercase")
        if opts.require_lowercase and not re.search(r"[a-z]", candidate):
            violations.append("missing_lowercase")
        if opts.require_numbers and not re.search(r"[0-9]", candidate):
            violations.append("missing_number")
        if opts.require_special_chars and not _SPECIAL_RE.search(candidate):
            violations.append("missing_special_char")
        if not violations:
            return PolicyResult(ok=True)
        message = _VIOLATION_MESSAGES[violations[0]].format(
            min_length=opts.min_length, max_length=opts.max_length
        )
        return PolicyResult(ok=False, violations=violations, message=message)

    def generate(self, length: Optional[int] = None) -> str:
        """Random password guaranteed to satisfy the policy."""
        opts = self.options
        size = max(length or opts.min_length, opts.min_length)
        required: List[str] = []
        if opts.require_uppercase:
            required.append(secrets.choice(string.ascii_uppercase))
        if opts.require_lowercase:
            required.append(secrets.choice(string.ascii_lowercase))
        if opts.require_numbers:
            required.append(secrets.choice(string.digits))
        if opts.require_special_chars:
            required.append(secrets.choice(SPECIAL_CHARS))
        alphabet = string.ascii_letters + string.digits
        if opts.require_special_chars:
            alphabet += SPECIAL_CHARS
        size = max(size, len(required))
        chars = required + [
            secrets.choice(alphabet) for _ in range(size - len(required))
        ]
        secrets.SystemRandom().shuffle(chars)
        return "".join(chars)


class PasswordHasher:
    """argon2id hashing with cost parameters fixed by configuration."""

    algorithm = "argon2id"

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 64 * 1024, parallelism: int = 4
    ) -> None:
        self._hasher = Argon2PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        # verified against when the user does not exist so unknown-email
        # logins cost the same as wrong-password logins
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    @classmethod
    def from_settings(cls, settings) -> "PasswordHasher":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
        )

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            logger.warning("password_hash_unparseable")
            return True

    def dummy_verify(self, password: str) -> None:
        self.verify(password, self._dummy_hash)
