from __future__ import annotations

import contextlib
import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from authcore.logging import get_logger
from authcore.storage.common import (
    canonicalize_email,
    check_update_fields,
    generate_uuid,
    merge_profile,
    token_digest,
)
from authcore.storage.errors import ConstraintViolation, RecordNotFound, StorageError
from authcore.storage.models import InvalidatedToken, User, utcnow


class MemoryStore:
    """In-process identity store, optionally persisted to a JSON state file.

    With ``fs_root`` unset the store lives purely in memory, which is what the
    test suite and single-process deployments use.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.emails: Dict[str, str] = {}
        self.invalidated_tokens: Dict[str, InvalidatedToken] = {}
        # RLock for all data operations; nested acquisition happens when
        # helpers call each other while already holding the lock.
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        if self.fs_root is None:
            raise StorageError("store has no fs_root configured")
        state_dir = self.fs_root / "state"
        try:
            state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(
                "failed to create state directory", {"path": str(state_dir)}
            ) from exc
        return state_dir / "auth_store.json"

    @contextlib.contextmanager
    def _mutating(self) -> Iterator[None]:
        """Hold the data lock and persist on exit.

        If the state file cannot be written the in-memory change is rolled
        back before the StorageError propagates.
        """
        with self._data_lock:
            if self.fs_root is None:
                yield
                return
            backup = (
                copy.deepcopy(self.users),
                dict(self.emails),
                dict(self.invalidated_tokens),
            )
            try:
                yield
                self._persist_state()
            except StorageError:
                self.users, self.emails, self.invalidated_tokens = backup
                raise

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _snapshot(user: User) -> User:
        # callers must not be able to mutate stored records in place
        return copy.deepcopy(user)

    # user / auth
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        profile: Optional[Dict] = None,
        email_verified: bool = False,
    ) -> User:
        canonical = canonicalize_email(email)
        with self._mutating():
            if canonical in self.emails:
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=generate_uuid(),
                email=canonical,
                password_hash=password_hash,
                profile=copy.deepcopy(profile) if profile else {},
                email_verified=email_verified,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self.emails[canonical] = user.id
        return self._snapshot(user)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._snapshot(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        canonical = canonicalize_email(email)
        with self._data_lock:
            user_id = self.emails.get(canonical)
            if user_id is None:
                return None
            return self._snapshot(self.users[user_id])

    def update_user(self, user_id: str, **changes: Any) -> User:
        check_update_fields(changes)
        with self._mutating():
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if "email" in changes:
                canonical = canonicalize_email(changes["email"])
                owner = self.emails.get(canonical)
                if owner is not None and owner != user_id:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}
                    )
                self.emails.pop(user.email, None)
                self.emails[canonical] = user_id
                user.email = canonical
            if "profile" in changes:
                user.profile = merge_profile(user.profile, changes["profile"])
            if "password_hash" in changes:
                user.password_hash = changes["password_hash"]
            if "email_verified" in changes:
                user.email_verified = bool(changes["email_verified"])
            if "last_login_at" in changes:
                user.last_login_at = changes["last_login_at"]
            user.updated_at = utcnow()
            return self._snapshot(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            with self._mutating():
                user = self.users.pop(user_id)
                self.emails.pop(user.email, None)
            return True

    def bump_token_version(self, user_id: str) -> int:
        with self._mutating():
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            user.token_version += 1
            user.updated_at = utcnow()
            return user.token_version

    # invalidated-token registry
    def invalidate_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> None:
        self.consume_token(token, expires_at)

    def is_token_invalidated(self, token: str) -> bool:
        with self._data_lock:
            return token_digest(token) in self.invalidated_tokens

    def consume_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> bool:
        digest = token_digest(token)
        with self._data_lock:
            if digest in self.invalidated_tokens:
                return False
            with self._mutating():
                self.invalidated_tokens[digest] = InvalidatedToken(
                    token_digest=digest, expires_at=expires_at
                )
            return True

    def prune_invalidated_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._data_lock:
            expired = [
                digest
                for digest, record in self.invalidated_tokens.items()
                if record.expires_at is not None and record.expires_at <= cutoff
            ]
            if expired:
                with self._mutating():
                    for digest in expired:
                        self.invalidated_tokens.pop(digest, None)
        if expired:
            self.logger.info("invalidated_tokens_pruned", count=len(expired))
        return len(expired)

    # persistence
    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "profile": user.profile,
            "email_verified": user.email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "token_version": user.token_version,
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            profile=data.get("profile") or {},
            email_verified=bool(data.get("email_verified", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            token_version=int(data.get("token_version", 0)),
        )

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "invalidated_tokens": [
                {
                    "token_digest": record.token_digest,
                    "invalidated_at": self._serialize_datetime(record.invalidated_at),
                    "expires_at": self._serialize_datetime(record.expires_at),
                }
                for record in self.invalidated_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise StorageError(
                "failed to persist auth store state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # try/except instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StorageError(
                "failed to load auth store state", {"path": str(path)}
            ) from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.emails = {user.email: user.id for user in self.users.values()}
        self.invalidated_tokens = {}
        for entry in data.get("invalidated_tokens", []):
            record = InvalidatedToken(
                token_digest=entry["token_digest"],
                invalidated_at=self._deserialize_datetime(entry.get("invalidated_at"))
                or utcnow(),
                expires_at=self._deserialize_datetime(entry.get("expires_at")),
            )
            self.invalidated_tokens[record.token_digest] = record
        self.logger.info(
            "auth_store_state_loaded",
            users=len(self.users),
            invalidated_tokens=len(self.invalidated_tokens),
        )
        return True
