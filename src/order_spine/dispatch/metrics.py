"""Dispatch metrics — counters kept by the engine, snapshots handed out.

``MetricsRecorder`` is mutated only by the dispatch engine.  Callers get a
frozen :class:`DispatchMetrics` from ``engine.metrics()``; taking one has
no side effects and never blocks.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass(frozen=True)
class DispatchMetrics:
    """Point-in-time view of the dispatcher.

    Attributes:
        queued: Orders waiting in the admission queue
        in_flight: Orders holding a slot (validating or executing)
        retrying: Orders sleeping out a backoff delay
        completed: Orders that reached COMPLETED
        failed: Orders that reached FAILED
        submitted: Orders accepted by ``submit()``
        sink_failures: Store or hub writes that raised
        invariant_violations: Rejected state transitions
        average_latency_ms: Mean submit-to-terminal time over finished orders
    """

    queued: int = 0
    in_flight: int = 0
    retrying: int = 0
    completed: int = 0
    failed: int = 0
    submitted: int = 0
    sink_failures: int = 0
    invariant_violations: int = 0
    average_latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MetricsRecorder:
    """Mutable counters behind :class:`DispatchMetrics`."""

    def __init__(self) -> None:
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.sink_failures = 0
        self.invariant_violations = 0
        self._latency_total_ms = 0.0
        self._latency_samples = 0

    def record_finished(self, status_completed: bool, latency_ms: float) -> None:
        if status_completed:
            self.completed += 1
        else:
            self.failed += 1
        self._latency_total_ms += latency_ms
        self._latency_samples += 1

    @property
    def average_latency_ms(self) -> float:
        if not self._latency_samples:
            return 0.0
        return self._latency_total_ms / self._latency_samples

    def snapshot(self, *, queued: int, in_flight: int, retrying: int) -> DispatchMetrics:
        return DispatchMetrics(
            queued=queued,
            in_flight=in_flight,
            retrying=retrying,
            completed=self.completed,
            failed=self.failed,
            submitted=self.submitted,
            sink_failures=self.sink_failures,
            invariant_violations=self.invariant_violations,
            average_latency_ms=round(self.average_latency_ms, 3),
        )
