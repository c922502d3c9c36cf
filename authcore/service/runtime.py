from __future__ import annotations

from typing import Any, Callable, Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.email import EmailNotifier, EmailService
from authcore.service.passwords import PasswordHasher, PasswordPolicy
from authcore.service.rate_limit import build_rate_limiter
from authcore.service.tokens import TokenService
from authcore.storage.common import AuthStore
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> AuthStore:
    if settings.use_memory_store or not settings.database_url:
        return MemoryStore(fs_root=settings.state_dir)
    return PostgresStore(settings.database_url)


class Runtime:
    """Composition root: builds every collaborator once from ``Settings``.

    Callers create one Runtime at process start and pass ``runtime.auth``
    wherever it is needed; there is no module-level instance.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache: Optional[RedisCache] = None,
        send_email: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = store or build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=type(self.store).__name__)

        self.cache = cache
        if self.cache is None and self.settings.redis_url:
            candidate = RedisCache(self.settings.redis_url)
            try:
                candidate.verify_connection()
                self.cache = candidate
            except Exception as exc:
                if not self.settings.test_mode:
                    raise RuntimeError(
                        "Redis is configured but unreachable; fix REDIS_URL or unset it "
                        "to use in-process rate limits"
                    ) from exc
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Running with in-process rate limits under TEST_MODE",
                )

        self.rate_limiter = build_rate_limiter(self.cache)
        self.hasher = PasswordHasher.from_settings(self.settings)
        self.policy = PasswordPolicy(self.settings.password_options)
        self.tokens = TokenService(self.store, self.settings)
        sender = send_email or self.settings.email_options.send_email
        if sender is None:
            sender = EmailService.from_settings(self.settings)
        self.notifier = EmailNotifier(self.settings.email_options, sender)
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            hasher=self.hasher,
            policy=self.policy,
            rate_limiter=self.rate_limiter,
            notifier=self.notifier,
        )
        logger.info("runtime_init_completed")

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
