from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str = field(repr=False)
    profile: Dict = field(default_factory=dict)
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    token_version: int = 0

    def public(self) -> "PublicUser":
        return PublicUser(
            id=self.id,
            email=self.email,
            profile=dict(self.profile or {}),
            email_verified=self.email_verified,
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_login_at=self.last_login_at,
        )


@dataclass(frozen=True)
class PublicUser:
    """User view handed to callers; carries no credential material."""

    id: str
    email: str
    profile: Dict
    email_verified: bool
    created_at: datetime
    updated_at: datetime
    last_login_at: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "profile": self.profile,
            "email_verified": self.email_verified,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_login_at": self.last_login_at.isoformat()
            if self.last_login_at
            else None,
        }


@dataclass
class InvalidatedToken:
    token_digest: str
    invalidated_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
