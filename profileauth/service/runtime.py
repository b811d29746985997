from __future__ import annotations

import threading
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

from profileauth.clock import Clock, SystemClock
from profileauth.config import get_settings, reset_settings_cache
from profileauth.logging import get_logger
from profileauth.service.email import EmailNotifier
from profileauth.service.hashing import CredentialHasher
from profileauth.service.reaper import Reaper, code_reaper, token_reaper
from profileauth.service.sessions import SessionManager
from profileauth.service.tokens import TokenIssuer
from profileauth.service.verification import VerificationCodeManager
from profileauth.storage.memory import MemoryStore
from profileauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton store and services of the auth core."""

    def __init__(self, *, clock: Optional[Clock] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = CredentialHasher.from_settings(self.settings)
        self.tokens = TokenIssuer.from_settings(self.settings, clock=self.clock)
        self.sessions = SessionManager(self.store, self.hasher, self.tokens, clock=self.clock)
        self.email = EmailNotifier.from_settings(self.settings)
        self.verification = VerificationCodeManager.from_settings(
            self.settings, self.store, self.email, clock=self.clock
        )
        self.reapers: List[Reaper] = [
            token_reaper(
                self.store,
                interval_seconds=self.settings.token_reaper_interval_seconds,
                clock=self.clock,
            ),
            code_reaper(
                self.store,
                interval_seconds=self.settings.code_reaper_interval_seconds,
                clock=self.clock,
            ),
        ]
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            email_enabled=self.email.is_enabled,
        )

    async def start_background(self) -> None:
        """Start the reapers unless the runtime is in test mode."""
        if self.settings.test_mode:
            logger.info("runtime_background_skipped", reason="test_mode")
            return
        for reaper in self.reapers:
            await reaper.start()

    async def stop_background(self) -> None:
        for reaper in self.reapers:
            await reaper.stop()

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
