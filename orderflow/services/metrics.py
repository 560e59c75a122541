"""
In-process metric store with rolling-window queries.

Each (name, label set) pair owns a deque of immutable samples. ``record``
only appends to the right end and the retention sweep only pops from the
left end, both of which are atomic deque operations, so a sweep never holds
up producers. Queries work on a copy of the series and never touch raw
samples.
"""
import asyncio
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

ORDER_CREATE_SECONDS = "order_create_seconds"
ORDERS_TOTAL = "orders_total"
CACHE_REQUESTS_TOTAL = "cache_requests_total"
STOCK_COMPENSATION_FAILURES_TOTAL = "stock_compensation_failures_total"

LabelSet = FrozenSet[Tuple[str, str]]


def _label_set(labels: Optional[Mapping[str, str]]) -> LabelSet:
    return frozenset((str(k), str(v)) for k, v in (labels or {}).items())


@dataclass(frozen=True)
class MetricSample:
    name: str
    labels: LabelSet
    value: float
    timestamp: float


@dataclass(frozen=True)
class WindowAggregate:
    """Aggregate over the samples of one window; derived, never stored."""
    count: int
    total: float
    minimum: Optional[float]
    maximum: Optional[float]
    window_seconds: float
    values: Tuple[float, ...] = field(default=(), repr=False)

    @property
    def average(self) -> Optional[float]:
        return self.total / self.count if self.count else None

    @property
    def rate(self) -> float:
        """Sum per second over the window."""
        return self.total / self.window_seconds if self.window_seconds else 0.0

    def percentile(self, pct: float) -> Optional[float]:
        """Nearest-rank percentile; None for an empty window."""
        if not self.values:
            return None
        ordered = sorted(self.values)
        rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
        return ordered[min(rank, len(ordered)) - 1]

    def value_of(self, aggregation: str) -> Optional[float]:
        """
        Resolve an aggregation name: count, sum, avg, min, max, rate or pNN.
        Returns None when the window holds no samples.
        """
        if aggregation == "count":
            return float(self.count)
        if not self.count:
            return None
        if aggregation == "sum":
            return self.total
        if aggregation == "avg":
            return self.average
        if aggregation == "min":
            return self.minimum
        if aggregation == "max":
            return self.maximum
        if aggregation == "rate":
            return self.rate
        if aggregation.startswith("p") and aggregation[1:].replace(".", "", 1).isdigit():
            return self.percentile(float(aggregation[1:]))
        raise ValueError(f"Unknown aggregation {aggregation!r}")


class MetricStore:
    """
    Append-only metric samples keyed by name and label set.

    The store is an owned object handed to each producer, so tests can run
    isolated instances side by side.
    """

    def __init__(
        self,
        retention_seconds: float = 24 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._series: Dict[Tuple[str, LabelSet], Deque[MetricSample]] = {}

    def record(
        self,
        name: str,
        labels: Optional[Mapping[str, str]] = None,
        value: float = 1.0,
    ) -> None:
        label_set = _label_set(labels)
        sample = MetricSample(name, label_set, float(value), self._clock())
        series = self._series.get((name, label_set))
        if series is None:
            series = self._series.setdefault((name, label_set), deque())
        series.append(sample)

    def _matching(self, name: str, labels: Optional[Mapping[str, str]]) -> Iterable[Deque[MetricSample]]:
        wanted = _label_set(labels)
        for (series_name, label_set), series in list(self._series.items()):
            if series_name == name and wanted <= label_set:
                yield series

    def query(
        self,
        name: str,
        labels: Optional[Mapping[str, str]] = None,
        window_seconds: float = 300.0,
    ) -> WindowAggregate:
        """
        Aggregate every series of ``name`` whose labels include ``labels``,
        using only samples stamped within the last ``window_seconds``.
        """
        now = self._clock()
        start = now - window_seconds
        values: List[float] = []
        for series in self._matching(name, labels):
            values.extend(s.value for s in series.copy() if start <= s.timestamp <= now)
        return WindowAggregate(
            count=len(values),
            total=sum(values),
            minimum=min(values) if values else None,
            maximum=max(values) if values else None,
            window_seconds=window_seconds,
            values=tuple(values),
        )

    def series_names(self) -> List[str]:
        return sorted({name for name, _ in list(self._series)})

    def sample_count(self) -> int:
        return sum(len(series) for series in list(self._series.values()))

    def sweep(self) -> int:
        """Drop samples older than the retention horizon; returns how many."""
        cutoff = self._clock() - self.retention_seconds
        removed = 0
        # Empty series are kept: a producer may already hold a reference to one.
        for series in list(self._series.values()):
            while series and series[0].timestamp < cutoff:
                series.popleft()
                removed += 1
        if removed:
            logger.debug(f"Metric retention sweep removed {removed} samples")
        return removed

    async def sweep_async(self) -> int:
        return await asyncio.to_thread(self.sweep)
