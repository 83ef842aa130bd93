from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FailoverConfig:
    window_size: int = 10
    failure_threshold: float = 50.0  # percent, inclusive
    cooldown_ms: int = 600_000  # 10 minutes

    def __post_init__(self) -> None:
        if self.window_size <= 0:
            raise ValueError("window_size must be positive")
        if not 0 < self.failure_threshold <= 100:
            raise ValueError("failure_threshold must be in (0, 100]")
        if self.cooldown_ms <= 0:
            raise ValueError("cooldown_ms must be positive")
