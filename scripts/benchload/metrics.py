"""
Performance metrics collection and reporting.
Tracks throughput, timing, and the committed row total.
"""
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional
from threading import Lock


@dataclass
class TimerMetric:
    """Tracks timing for an operation."""
    start_time: Optional[float] = None
    total_time: float = 0.0
    count: int = 0

    def start(self):
        self.start_time = time.perf_counter()

    def stop(self) -> float:
        """Stop timing and record duration."""
        if self.start_time is not None:
            duration = time.perf_counter() - self.start_time
            self.total_time += duration
            self.count += 1
            self.start_time = None
            return duration
        return 0.0

    def average(self) -> float:
        return self.total_time / self.count if self.count > 0 else 0.0


@dataclass
class CounterMetric:
    """Tracks counts and rates."""
    count: int = 0
    start_time: float = field(default_factory=time.perf_counter)

    def increment(self, amount: int = 1):
        self.count += amount

    def rate(self) -> float:
        """Calculate items per second."""
        elapsed = time.perf_counter() - self.start_time
        return self.count / elapsed if elapsed > 0 else 0.0


class MetricsCollector:
    """
    Collects and reports performance metrics.
    Thread-safe for concurrent operations.
    """

    def __init__(self):
        self._timers: Dict[str, TimerMetric] = {}
        self._counters: Dict[str, CounterMetric] = {}
        self._lock = Lock()
        self._start_time = time.perf_counter()

    def start_timer(self, name: str):
        with self._lock:
            if name not in self._timers:
                self._timers[name] = TimerMetric()
            self._timers[name].start()

    def stop_timer(self, name: str) -> float:
        """Stop a named timer and return duration."""
        with self._lock:
            if name in self._timers:
                return self._timers[name].stop()
        return 0.0

    def record_count(self, name: str, amount: int = 1):
        with self._lock:
            if name not in self._counters:
                self._counters[name] = CounterMetric()
            self._counters[name].increment(amount)

    def elapsed_time(self) -> float:
        return time.perf_counter() - self._start_time

    def format_summary(self) -> str:
        """Format complete metrics summary."""
        with self._lock:
            lines = ["", "Performance Metrics:", "=" * 50]

            total_time = self.elapsed_time()
            lines.append(f"Total execution time: {self._format_duration(total_time)}")
            lines.append("")

            if self._counters:
                lines.append("Throughput:")
                for name, counter in sorted(self._counters.items()):
                    rate = counter.rate()
                    if name.endswith("_bytes"):
                        lines.append(
                            f"  {name}: {counter.count:,} ({rate / (1024 * 1024):.1f} MiB/s)"
                        )
                    else:
                        lines.append(f"  {name}: {counter.count:,} ({rate:.1f}/s)")
                lines.append("")

            if self._timers:
                lines.append("Operation timings:")
                for name, timer in sorted(self._timers.items()):
                    if timer.count > 0:
                        avg = timer.average()
                        lines.append(
                            f"  {name}: {timer.count} ops, "
                            f"avg {avg:.3f}s, total {timer.total_time:.1f}s"
                        )
                lines.append("")

            lines.append("=" * 50)
            return "\n".join(lines)

    @staticmethod
    def _format_duration(seconds: float) -> str:
        if seconds < 60:
            return f"{seconds:.1f}s"
        elif seconds < 3600:
            return f"{seconds / 60:.1f}m"
        else:
            return f"{seconds / 3600:.1f}h"


class RowCounter:
    """
    Process-wide total of rows observed by the consumer side.

    Only consumers call add(); everyone else reads. A milestone callback
    fires once each time the total crosses a multiple of `milestone`.
    """

    def __init__(
        self,
        milestone: int = 1_000_000,
        on_milestone: Optional[Callable[[int], None]] = None
    ):
        self.milestone = milestone
        self.on_milestone = on_milestone
        self._value = 0
        self._last_milestone = 0
        self._lock = Lock()

    def add(self, rows: int) -> int:
        """Add rows and return the new total."""
        fired = None
        with self._lock:
            self._value += rows
            total = self._value
            if self.milestone > 0:
                reached = total // self.milestone
                if reached > self._last_milestone:
                    self._last_milestone = reached
                    fired = reached
        if fired is not None and self.on_milestone:
            self.on_milestone(fired)
        return total

    @property
    def value(self) -> int:
        with self._lock:
            return self._value
