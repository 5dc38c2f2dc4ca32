from __future__ import annotations

import threading

from kispha.config import get_settings, reset_settings_cache
from kispha.logging import get_logger
from kispha.service.gate import MutationGate
from kispha.service.identity import IdentityService
from kispha.service.invariants import IdentityInvariants
from kispha.service.tokens import TokenCodec, TokenValidator
from kispha.storage.memory import MemoryStore
from kispha.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        # Bad key material aborts startup here, before any request is served
        self.codec = TokenCodec(self.settings.token_keys())
        self.validator = TokenValidator(
            self.codec, validity_ms=self.settings.token_validity_ms
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.gate = MutationGate(self.validator)
        self.invariants = IdentityInvariants(self.store)
        self.identity = IdentityService(
            self.store, self.validator, gate=self.gate, invariants=self.invariants
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            token_validity_ms=self.settings.token_validity_ms,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
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
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
