"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: admission runs under a lock around shared state.
- Expired records are reclaimed by a background sweeper thread owned by the
  limiter instance (see ``start()`` / ``stop()``).
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable

from app.adapters.rate_limit.base import (
    UNKNOWN_CLIENT_KEY,
    AbstractRateLimiter,
    ClientWindow,
    RateLimitOptions,
    RateLimitResult,
)

logger = logging.getLogger(__name__)


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed time window per client key.

    A window starts with the first request seen from a client (or the first
    one after the previous window expired) and lasts ``window_ms``. Requests
    inside the window increment the counter; once it exceeds ``max`` every
    further request in that window is denied. The counter keeps growing while
    denied, and ``reset_time`` is never pushed back by a denial.

    Important:
        The first request of a window is always allowed, even with ``max=0``.
    """

    def __init__(
        self,
        options: RateLimitOptions | None = None,
        *,
        clock: Callable[[], int] = _epoch_ms,
    ) -> None:
        """Initialize the limiter.

        Args:
            options: Limiter configuration; defaults to ``RateLimitOptions()``.
            clock: Time source returning epoch milliseconds.
        """
        self._options = options or RateLimitOptions()
        self._clock = clock
        self._lock = threading.Lock()
        self._store: dict[str, ClientWindow] = {}

        self._sweeper: threading.Thread | None = None
        self._stop_event = threading.Event()

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"InMemoryFixedWindowRateLimiter(window_ms={self._options.window_ms}, "
            f"max={self._options.max}, size={len(self._store)})"
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    def __enter__(self) -> InMemoryFixedWindowRateLimiter:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    @property
    def options(self) -> RateLimitOptions:
        return self._options

    @property
    def running(self) -> bool:
        return self._sweeper is not None and self._sweeper.is_alive()

    def admit(self, client_key: str | None, now_ms: int | None = None) -> RateLimitResult:
        key = client_key or UNKNOWN_CLIENT_KEY
        now = self._clock() if now_ms is None else now_ms
        opts = self._options

        with self._lock:
            window = self._store.get(key)
            if window is None or window.is_expired(now):
                window = ClientWindow(count=1, reset_time=now + opts.window_ms)
                self._store[key] = window
                return self._result(key, window, now, allowed=True)

            window.count += 1
            return self._result(key, window, now, allowed=window.count <= opts.max)

    def _result(self, key: str, window: ClientWindow, now: int, *, allowed: bool) -> RateLimitResult:
        if allowed:
            return RateLimitResult(
                allowed=True,
                key=key,
                count=window.count,
                limit=self._options.max,
                reset_time=window.reset_time,
                decided_at=now,
            )
        return RateLimitResult(
            allowed=False,
            key=key,
            count=window.count,
            limit=self._options.max,
            reset_time=window.reset_time,
            decided_at=now,
            status_code=self._options.status_code,
            message=self._options.message,
        )

    def get(self, client_key: str) -> ClientWindow | None:
        """Return a snapshot of the record for ``client_key``, if any."""

        with self._lock:
            window = self._store.get(client_key)
            return replace(window) if window is not None else None

    def reset(self, client_key: str | None = None) -> None:
        """Forget one client, or every client when no key is given."""

        with self._lock:
            if client_key is None:
                self._store.clear()
            else:
                self._store.pop(client_key, None)

    def sweep(self, now_ms: int | None = None) -> int:
        """Remove every record whose window ended at or before ``now_ms``.

        Keys are copied first; the lock is then held only for each key's
        removal decision, so in-flight admissions are never blocked for the
        length of a full scan.
        """

        now = self._clock() if now_ms is None else now_ms
        with self._lock:
            keys = list(self._store)

        removed = 0
        for key in keys:
            with self._lock:
                window = self._store.get(key)
                if window is not None and window.is_expired(now):
                    del self._store[key]
                    removed += 1

        logger.debug(
            "rate_limit.sweep",
            extra={"removed": removed, "scanned": len(keys), "sweep_time_ms": now},
        )
        return removed

    def start(self) -> None:
        """Start the background sweeper. Calling it twice is a no-op."""

        if self.running:
            return
        self._stop_event = threading.Event()
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            args=(self._stop_event,),
            name="rate-limit-sweeper",
            daemon=True,
        )
        self._sweeper.start()
        logger.info(
            "rate_limit.sweeper_started",
            extra={"sweep_interval_ms": self._options.sweep_interval_ms},
        )

    def stop(self) -> None:
        """Stop the background sweeper and wait for it to exit."""

        self._stop_event.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None and sweeper.is_alive():
            sweeper.join(timeout=5)
            logger.info("rate_limit.sweeper_stopped")

    def _sweep_loop(self, stop_event: threading.Event) -> None:
        interval_s = self._options.sweep_interval_ms / 1000
        while not stop_event.wait(interval_s):
            try:
                self.sweep()
            except Exception as exc:  # pragma: no cover - keep the sweeper alive
                logger.warning("rate_limit.sweep_failed", extra={"error_type": type(exc).__name__})
