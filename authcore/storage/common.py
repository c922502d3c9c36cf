"""Storage contract and helpers shared between memory and postgres implementations.

Both backends funnel email canonicalization, profile merging and token
digesting through this module so their observable behaviour stays identical.
"""

from __future__ import annotations

import copy
import hashlib
import unicodedata
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from authcore.storage.models import User

# Columns callers may change through ``update_user``.
UPDATABLE_USER_FIELDS = frozenset(
    {"email", "password_hash", "profile", "email_verified", "last_login_at"}
)


class AuthStore(Protocol):
    """Identity storage contract every backend must satisfy."""

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        profile: Optional[dict] = None,
        email_verified: bool = False,
    ) -> User: ...

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **changes: Any) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def bump_token_version(self, user_id: str) -> int: ...

    def invalidate_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> None: ...

    def is_token_invalidated(self, token: str) -> bool: ...

    def consume_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> bool: ...

    def prune_invalidated_tokens(self, now: Optional[datetime] = None) -> int: ...


# ============================================================================
# DATA TRANSFORMATION HELPERS
# ============================================================================

def canonicalize_email(email: str) -> str:
    """Return the lookup form of an address: NFKC-normalized, stripped, lowercased."""
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def merge_profile(existing: Optional[Dict], updates: Optional[Dict]) -> Dict:
    """Deep-merge ``updates`` into a copy of ``existing``.

    Nested dicts merge key by key; any other value (lists included) replaces
    what was there.
    """
    merged = copy.deepcopy(existing) if existing else {}
    for key, value in (updates or {}).items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = merge_profile(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def check_update_fields(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unsupported user fields: {', '.join(sorted(unknown))}")


# ============================================================================
# UTILITY FUNCTIONS
# ============================================================================

def token_digest(token: str) -> str:
    """SHA-256 hex digest used as the invalidation registry key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_uuid() -> str:
    return str(uuid.uuid4())
