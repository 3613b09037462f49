"""Weighted, monotonic progress shared by the video and audio pipelines."""

import threading
from typing import Any, Callable

# Asset analysis finishes before either pipeline starts and owns the rest.
DEFAULT_WEIGHTS = {"analysis": 0.1, "video": 0.45, "audio": 0.45}


class ProgressAggregator:
    """Accumulate per-contributor fractions into one running total.

    Each contributor reports its own completion in [0, 1]. Only forward
    movement counts: a repeated or out-of-order report adds nothing, so the
    total never decreases.
    """

    def __init__(
        self,
        weights: dict[str, float] | None = None,
        on_change: Callable[[float, Any], None] | None = None,
    ):
        weights = dict(DEFAULT_WEIGHTS if weights is None else weights)
        if any(w < 0 for w in weights.values()):
            raise ValueError("progress weights must be non-negative")
        if abs(sum(weights.values()) - 1.0) > 1e-9:
            raise ValueError(f"progress weights must sum to 1, got {sum(weights.values())}")

        self._weights = weights
        self._last = {name: 0.0 for name in weights}
        self._value = 0.0
        self._on_change = on_change
        # Reentrant so a callback may read the value.
        self._lock = threading.RLock()

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def fraction(self, name: str) -> float:
        with self._lock:
            return self._last[name]

    def report(self, name: str, fraction: float, preview: Any = None) -> float:
        """Record ``name`` at ``fraction`` complete and return the running total."""
        if name not in self._weights:
            raise KeyError(f"unknown progress contributor: {name}")
        fraction = min(max(float(fraction), 0.0), 1.0)

        with self._lock:
            delta = fraction - self._last[name]
            if delta > 0:
                self._last[name] = fraction
                self._value = min(self._value + delta * self._weights[name], 1.0)
            # Notify under the lock so observers see values in order.
            if self._on_change and (delta > 0 or preview is not None):
                self._on_change(self._value, preview)
            return self._value

    def complete(self, name: str) -> float:
        return self.report(name, 1.0)
