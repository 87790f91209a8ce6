"""Stage timing and a small in-process cache.

A pipeline run is dominated by document conversion and provider round
trips. ``PerformanceMonitor`` keeps per-stage durations so a slow stage is
visible both in logs and in ``PipelineResult.metadata``.
"""

import functools
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Generator, Optional, Tuple, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class PerformanceMetrics:
    """One timed stage of one contract's run."""

    operation_name: str
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None
    duration: Optional[float] = None
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def finish(self, success: bool = True, error: Optional[str] = None) -> None:
        self.end_time = time.monotonic()
        self.duration = self.end_time - self.start_time
        self.success = success
        self.error = error


class PerformanceMonitor:
    """
    Collects stage timings across pipeline runs.

    Runs of different contracts record into the same monitor from
    different threads. Only the most recent ``max_samples`` timings of each
    stage are kept, so statistics describe recent runs.
    """

    def __init__(self, max_stage_time: float = 120.0, max_samples: int = 500):
        """
        Args:
            max_stage_time: Seconds after which a finished stage is logged as slow.
            max_samples: Timings kept per stage.
        """
        self.max_stage_time = max_stage_time
        self.max_samples = max_samples
        self.metrics: Dict[str, Deque[PerformanceMetrics]] = {}
        self._lock = threading.Lock()

    def start_operation(self, operation_name: str, **metadata) -> PerformanceMetrics:
        return PerformanceMetrics(operation_name=operation_name, metadata=metadata)

    def end_operation(
        self,
        metric: PerformanceMetrics,
        success: bool = True,
        error: Optional[str] = None
    ) -> None:
        metric.finish(success=success, error=error)
        with self._lock:
            samples = self.metrics.get(metric.operation_name)
            if samples is None:
                samples = self.metrics[metric.operation_name] = deque(maxlen=self.max_samples)
            samples.append(metric)

        if metric.duration is not None and metric.duration > self.max_stage_time:
            contract_id = metric.metadata.get("contract_id")
            logger.warning(
                f"Stage '{metric.operation_name}' took {metric.duration:.2f}s "
                f"(limit {self.max_stage_time}s)"
                + (f" for contract {contract_id}" if contract_id else "")
            )

    @contextmanager
    def track(self, operation_name: str, **metadata) -> Generator[PerformanceMetrics, None, None]:
        """
        Time a block; a raised exception marks the stage failed and propagates.

        Example:
            with monitor.track("provider_upload", contract_id=cid):
                provider.upload(artifact)
        """
        metric = self.start_operation(operation_name, **metadata)
        try:
            yield metric
        except Exception as e:
            self.end_operation(metric, success=False, error=str(e))
            raise
        self.end_operation(metric)

    def get_operation_stats(self, operation_name: str) -> Dict[str, Any]:
        """Count, mean, extremes, total and success rate for one stage."""
        with self._lock:
            recorded = list(self.metrics.get(operation_name, ()))

        durations = [m.duration for m in recorded if m.duration is not None]
        if not durations:
            return {}

        total = sum(durations)
        return {
            "count": len(durations),
            "average": total / len(durations),
            "min": min(durations),
            "max": max(durations),
            "total": total,
            "success_rate": sum(1 for m in recorded if m.success) / len(recorded),
        }

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            names = sorted(self.metrics)
        return {name: self.get_operation_stats(name) for name in names}


def timed_operation(operation_name: str):
    """Log the duration of each call to the decorated function at DEBUG level."""
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            started = time.monotonic()
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.error(f"{operation_name} failed after {time.monotonic() - started:.2f}s: {e}")
                raise
            finally:
                logger.debug(f"{operation_name} took {time.monotonic() - started:.2f}s")
        return wrapper
    return decorator


class SimpleCache:
    """
    Bounded in-memory cache with a per-entry time to live.

    Holds template bytes, which every run reads and which only change
    when a template is re-uploaded.
    """

    def __init__(self, max_size: int = 100, ttl: int = 3600):
        self.max_size = max_size
        self.ttl = ttl
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        """Cached value, or None when missing or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if time.monotonic() - stored_at > self.ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        """Store a value; when full, the oldest entry makes room."""
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                oldest = min(self._entries, key=lambda k: self._entries[k][1])
                del self._entries[oldest]
            self._entries[key] = (value, time.monotonic())

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)
