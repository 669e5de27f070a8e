"""Detached best-effort side effects.

Work submitted here runs after the primary state transition has already been
committed. Its failure is logged and counted and never propagates back to the
caller.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from backend.core.observability.logging import get_logger
from backend.core.observability.metrics import increment_counter

logger = get_logger(__name__)


class DetachedRunner:
    def __init__(self, max_workers: int = 2) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="side-effect")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        def _guarded() -> Any:
            try:
                return fn(*args, **kwargs)
            except Exception:
                increment_counter("side_effect_failures_total", {"effect": name})
                logger.exception("side_effect_failed", extra={"effect": name})
                return None

        future = self._executor.submit(_guarded)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def drain(self, timeout: float | None = 5.0) -> None:
        """Wait for submitted effects to finish (shutdown and tests)."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


side_effects = DetachedRunner()
