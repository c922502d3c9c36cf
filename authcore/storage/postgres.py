from __future__ import annotations

import contextlib
import json
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import (
    canonicalize_email,
    check_update_fields,
    generate_uuid,
    merge_profile,
    token_digest,
)
from authcore.storage.errors import ConstraintViolation, RecordNotFound, StorageError
from authcore.storage.models import User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        profile JSONB NOT NULL DEFAULT '{}'::jsonb,
        email_verified BOOLEAN NOT NULL DEFAULT false,
        token_version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invalidated_token (
        token_digest TEXT PRIMARY KEY,
        invalidated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS invalidated_token_expires_at_idx
        ON invalidated_token (expires_at)
    """,
)


class PostgresStore:
    """Postgres-backed identity store.

    Email uniqueness is enforced by the UNIQUE constraint on ``auth_user.email``
    and single-use token consumption by the primary key on
    ``invalidated_token``, so both hold across processes.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    def _connect(self):
        return self.pool.connection()

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email already exists", {"field": "email", "operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("postgres_operation_failed", operation=operation, error=str(exc))
            raise StorageError(
                f"{operation} failed", {"operation": operation}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._guard("ensure_schema"), self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        profile = row.get("profile")
        if isinstance(profile, str):
            profile = json.loads(profile)
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            profile=profile or {},
            email_verified=bool(row.get("email_verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            token_version=int(row.get("token_version") or 0),
        )

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        profile: Optional[dict] = None,
        email_verified: bool = False,
    ) -> User:
        canonical = canonicalize_email(email)
        with self._guard("create_user"), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO auth_user (id, email, password_hash, profile, email_verified)
                VALUES (%s, %s, %s, %s::jsonb, %s)
                RETURNING *
                """,
                (
                    generate_uuid(),
                    canonical,
                    password_hash,
                    json.dumps(profile or {}),
                    email_verified,
                ),
            ).fetchone()
        return self._row_to_user(row)

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._guard("get_user_by_id"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._guard("get_user_by_email"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_user WHERE email = %s", (canonicalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user_id: str, **changes: Any) -> User:
        check_update_fields(changes)
        with self._guard("update_user"), self._connect() as conn:
            current = conn.execute(
                "SELECT * FROM auth_user WHERE id = %s FOR UPDATE", (user_id,)
            ).fetchone()
            if not current:
                raise RecordNotFound("user not found", {"user_id": user_id})
            assignments = ["updated_at = now()"]
            params: list[Any] = []
            if "email" in changes:
                assignments.append("email = %s")
                params.append(canonicalize_email(changes["email"]))
            if "profile" in changes:
                # deep merge happens here so both backends agree on semantics
                existing = self._row_to_user(current).profile
                assignments.append("profile = %s::jsonb")
                params.append(json.dumps(merge_profile(existing, changes["profile"])))
            for column in ("password_hash", "email_verified", "last_login_at"):
                if column in changes:
                    assignments.append(f"{column} = %s")
                    params.append(changes[column])
            params.append(user_id)
            row = conn.execute(
                f"UPDATE auth_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_user(row)

    def delete_user(self, user_id: str) -> bool:
        with self._guard("delete_user"), self._connect() as conn:
            result = conn.execute("DELETE FROM auth_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def bump_token_version(self, user_id: str) -> int:
        with self._guard("bump_token_version"), self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_user
                SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return int(row["token_version"])

    # invalidated-token registry
    def invalidate_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> None:
        self.consume_token(token, expires_at)

    def is_token_invalidated(self, token: str) -> bool:
        with self._guard("is_token_invalidated"), self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM invalidated_token WHERE token_digest = %s",
                (token_digest(token),),
            ).fetchone()
        return row is not None

    def consume_token(
        self, token: str, expires_at: Optional[datetime] = None
    ) -> bool:
        with self._guard("consume_token"), self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO invalidated_token (token_digest, expires_at)
                VALUES (%s, %s)
                ON CONFLICT (token_digest) DO NOTHING
                RETURNING token_digest
                """,
                (token_digest(token), expires_at),
            ).fetchone()
        return row is not None

    def prune_invalidated_tokens(self, now: Optional[datetime] = None) -> int:
        with self._guard("prune_invalidated_tokens"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM invalidated_token WHERE expires_at IS NOT NULL AND expires_at <= %s",
                (now or utcnow(),),
            )
            removed = result.rowcount
        if removed:
            self.logger.info("invalidated_tokens_pruned", count=removed)
        return removed
