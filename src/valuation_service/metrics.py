from __future__ import annotations

from collections import defaultdict, deque
from typing import Any


class MetricsRegistry:
    """In-process counters and the most recent latency samples, rendered on /metrics."""

    def __init__(self, namespace: str = "valuation", max_samples: int = 1000) -> None:
        self.namespace = namespace
        self.counters: dict[str, int] = defaultdict(int)
        self.histograms: dict[str, deque[float]] = defaultdict(lambda: deque(maxlen=max_samples))

    def incr(self, name: str, amount: int = 1) -> None:
        self.counters[name] += amount

    def observe(self, name: str, seconds: float) -> None:
        self.histograms[name].append(seconds)

    def reset(self) -> None:
        self.counters.clear()
        self.histograms.clear()

    def summary(self) -> dict[str, Any]:
        latency: dict[str, Any] = {}
        for name, vals in self.histograms.items():
            ordered = sorted(vals)
            n = len(ordered)
            latency[name] = {
                "count": n,
                "p50_ms": round(ordered[n // 2] * 1000, 1) if n else 0,
                "p95_ms": round(ordered[min(int(n * 0.95), n - 1)] * 1000, 1) if n else 0,
            }
        return {"counters": dict(self.counters), "latency": latency}

    def prometheus_text(self) -> str:
        lines: list[str] = []
        prefix = self.namespace
        for k, v in sorted(self.counters.items()):
            safe = _safe_name(k)
            lines.append(f"# TYPE {prefix}_{safe} counter")
            lines.append(f"{prefix}_{safe} {v}")

        for name, vals in sorted(self.histograms.items()):
            if not vals:
                continue
            safe = _safe_name(name)
            ordered = sorted(vals)
            n = len(ordered)
            lines.append(f"# TYPE {prefix}_{safe}_seconds summary")
            for q in (0.5, 0.9, 0.99):
                idx = min(int(n * q), n - 1)
                lines.append(f'{prefix}_{safe}_seconds{{quantile="{q}"}} {ordered[idx]:.6f}')
            lines.append(f"{prefix}_{safe}_seconds_count {n}")
            lines.append(f"{prefix}_{safe}_seconds_sum {sum(ordered):.6f}")

        return "\n".join(lines) + "\n"


def _safe_name(name: str) -> str:
    return name.replace(".", "_").replace("-", "_").lower()


metrics = MetricsRegistry()
