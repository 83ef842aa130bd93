from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from valuation.config import FailoverConfig

logger = logging.getLogger(__name__)


class ProviderStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class ProviderStatusRecord:
    status: ProviderStatus
    timestamp: float


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


class FailoverManager:
    """Routes between the primary and fallback valuation providers.

    Tracks the outcome of the last ``window_size`` primary-provider calls.
    Once the window is full and the failure percentage reaches
    ``failure_threshold``, every request goes to the fallback provider until
    ``cooldown_ms`` has elapsed, after which the window is cleared and the
    primary is tried again. The revert happens lazily, on the next
    ``record_success`` or ``should_use_fallback_provider`` call.
    """

    def __init__(
        self,
        config: FailoverConfig | None = None,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        self.config = config or FailoverConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._statuses: deque[ProviderStatusRecord] = deque(maxlen=self.config.window_size)
        self._using_fallback = False
        self._fallback_start_time = 0.0

    @property
    def using_fallback(self) -> bool:
        return self._using_fallback

    @property
    def failure_rate(self) -> float:
        with self._lock:
            return self._failure_rate()

    def record_success(self) -> None:
        with self._lock:
            self._append(ProviderStatus.SUCCESS)
            self._check_for_revert()

    def record_failure(self) -> None:
        with self._lock:
            self._append(ProviderStatus.FAILURE)

    def should_use_fallback_provider(self) -> bool:
        with self._lock:
            self._check_for_revert()
            if self._using_fallback:
                return True

            # a partially filled window never triggers fallback
            if len(self._statuses) < self.config.window_size:
                return False

            rate = self._failure_rate()
            if rate >= self.config.failure_threshold:
                self._using_fallback = True
                self._fallback_start_time = self._clock()
                logger.warning(
                    "Primary provider failure rate %.1f%% reached threshold %.1f%%, switching to fallback",
                    rate,
                    self.config.failure_threshold,
                )
                return True
            return False

    def reset_failover_status(self) -> None:
        with self._lock:
            self._reset()

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            remaining = 0.0
            if self._using_fallback:
                elapsed = self._clock() - self._fallback_start_time
                remaining = max(0.0, self.config.cooldown_ms - elapsed)
            return {
                "using_fallback": self._using_fallback,
                "failure_rate": round(self._failure_rate(), 2),
                "records": len(self._statuses),
                "failures": sum(1 for r in self._statuses if r.status is ProviderStatus.FAILURE),
                "window_size": self.config.window_size,
                "failure_threshold": self.config.failure_threshold,
                "cooldown_ms": self.config.cooldown_ms,
                "fallback_remaining_ms": round(remaining, 1),
            }

    # Callers must hold self._lock.

    def _append(self, status: ProviderStatus) -> None:
        # deque(maxlen=...) drops the oldest record on overflow
        self._statuses.append(ProviderStatusRecord(status=status, timestamp=self._clock()))

    def _failure_rate(self) -> float:
        if not self._statuses:
            return 0.0
        failures = sum(1 for r in self._statuses if r.status is ProviderStatus.FAILURE)
        return failures / len(self._statuses) * 100

    def _check_for_revert(self) -> None:
        if not self._using_fallback:
            return
        if self._clock() - self._fallback_start_time >= self.config.cooldown_ms:
            logger.info("Fallback cooldown of %d ms elapsed, reverting to primary provider", self.config.cooldown_ms)
            self._reset()

    def _reset(self) -> None:
        self._using_fallback = False
        self._statuses.clear()
