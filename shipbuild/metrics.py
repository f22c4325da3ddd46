"""Build and BuildRun metrics with optional labels."""

from __future__ import annotations

import enum
import math
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta

BUILD_STRATEGY_LABEL = "buildstrategy"
NAMESPACE_LABEL = "namespace"
BUILD_LABEL = "build"
BUILD_RUN_LABEL = "buildrun"

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


@dataclass
class MetricsConfig:
    """Which labels are enabled and which histogram buckets are used."""

    enabled_labels: list[str] = field(default_factory=list)
    build_run_completion_duration_buckets: tuple[float, ...] | None = None
    build_run_establish_duration_buckets: tuple[float, ...] | None = None
    build_run_ramp_up_duration_buckets: tuple[float, ...] | None = None


class MetricType(enum.Enum):
    COUNTER = "counter"
    HISTOGRAM = "histogram"


@dataclass(frozen=True)
class Sample:
    """One labelled series: a counter value or a histogram summary."""

    labels: dict[str, str]
    value: float = 0.0
    sum: float = 0.0
    count: int = 0
    buckets: tuple[tuple[float, int], ...] = ()


@dataclass(frozen=True)
class MetricFamily:
    name: str
    help: str
    type: MetricType
    samples: list[Sample]


class _Vec:
    type: MetricType

    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._lock = threading.Lock()

    def _key(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"{self.name}: expected labels {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(labels[name] for name in self.label_names)

    def _labels(self, key: tuple[str, ...]) -> dict[str, str]:
        return dict(zip(self.label_names, key))


class CounterVec(_Vec):
    """A family of monotonically increasing counters keyed by labels."""

    type = MetricType.COUNTER

    def __init__(self, name: str, help: str, label_names: Iterable[str] = ()) -> None:
        super().__init__(name, help, label_names)
        self._values: dict[tuple[str, ...], float] = {}

    def inc(self, labels: Mapping[str, str], amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + amount

    def collect(self) -> list[Sample]:
        with self._lock:
            return [Sample(self._labels(k), value=v) for k, v in self._values.items()]


@dataclass
class _HistogramState:
    counts: list[int]
    sum: float = 0.0
    count: int = 0


class HistogramVec(_Vec):
    """A family of histograms keyed by labels."""

    type = MetricType.HISTOGRAM

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Iterable[str] = (),
        buckets: Iterable[float] | None = None,
    ) -> None:
        super().__init__(name, help, label_names)
        bounds = [float(b) for b in (DEFAULT_BUCKETS if buckets is None else buckets)]
        if bounds and math.isinf(bounds[-1]):
            bounds.pop()
        if any(a >= b for a, b in zip(bounds, bounds[1:])):
            raise ValueError(f"{name}: histogram buckets must be in increasing order")
        self.buckets = tuple(bounds) + (math.inf,)
        self._states: dict[tuple[str, ...], _HistogramState] = {}

    def observe(self, labels: Mapping[str, str], value: float) -> None:
        key = self._key(labels)
        with self._lock:
            state = self._states.setdefault(key, _HistogramState([0] * len(self.buckets)))
            for index, bound in enumerate(self.buckets):
                if value <= bound:
                    state.counts[index] += 1
                    break
            state.sum += value
            state.count += 1

    def collect(self) -> list[Sample]:
        samples = []
        with self._lock:
            for key, state in self._states.items():
                cumulative, running = [], 0
                for bound, count in zip(self.buckets, state.counts):
                    running += count
                    cumulative.append((bound, running))
                samples.append(
                    Sample(
                        self._labels(key),
                        sum=state.sum,
                        count=state.count,
                        buckets=tuple(cumulative),
                    )
                )
        return samples


class Registry:
    """Holds collectors and gathers their current values."""

    def __init__(self) -> None:
        self._collectors: dict[str, _Vec] = {}
        self._lock = threading.Lock()

    def register(self, *args: _Vec) -> None:
        with self._lock:
            names = [c.name for c in args]
            for name in names:
                if name in self._collectors or names.count(name) > 1:
                    raise ValueError(f"duplicate metrics collector registration: {name}")
            for collector in args:
                self._collectors[collector.name] = collector

    def gather(self) -> list[MetricFamily]:
        with self._lock:
            collectors = sorted(self._collectors.values(), key=lambda c: c.name)
        families = []
        for collector in collectors:
            samples = collector.collect()
            if samples:
                families.append(
                    MetricFamily(collector.name, collector.help, collector.type, samples)
                )
        return families


_DEFAULT_REGISTRY = Registry()
_EXTRA_HANDLERS: dict[str, Callable] = {}


@dataclass
class _State:
    initialized: bool = False
    enabled: frozenset[str] = frozenset()
    build_count: CounterVec | None = None
    build_run_count: CounterVec | None = None
    establish: HistogramVec | None = None
    completion: HistogramVec | None = None
    build_run_ramp_up: HistogramVec | None = None
    task_run_ramp_up: HistogramVec | None = None
    task_run_pod_ramp_up: HistogramVec | None = None


_state = _State()


def default_registry() -> Registry:
    """The registry used when none is passed to :func:`init_prometheus`."""
    return _DEFAULT_REGISTRY


def extra_handlers() -> dict[str, Callable]:
    """Additional path handlers to serve next to the metrics endpoint."""
    return _EXTRA_HANDLERS


def init_prometheus(config: MetricsConfig, registry: Registry | None = None) -> None:
    """Create and register the metrics; later calls do nothing."""
    if _state.initialized:
        return
    _state.initialized = True
    registry = registry if registry is not None else default_registry()

    enabled = set(config.enabled_labels)
    build_labels = [
        label
        for label in (BUILD_STRATEGY_LABEL, NAMESPACE_LABEL, BUILD_LABEL)
        if label in enabled
    ]
    build_run_labels = build_labels + ([BUILD_RUN_LABEL] if BUILD_RUN_LABEL in enabled else [])
    _state.enabled = frozenset(build_run_labels)

    ramp_up = config.build_run_ramp_up_duration_buckets
    _state.build_count = CounterVec(
        "build_builds_registered_total", "Number of total registered Builds.", build_labels
    )
    _state.build_run_count = CounterVec(
        "build_buildruns_completed_total", "Number of total completed BuildRuns.", build_run_labels
    )
    _state.establish = HistogramVec(
        "build_buildrun_establish_duration_seconds",
        "BuildRun establish duration in seconds.",
        build_run_labels,
        config.build_run_establish_duration_buckets,
    )
    _state.completion = HistogramVec(
        "build_buildrun_completion_duration_seconds",
        "BuildRun completion duration in seconds.",
        build_run_labels,
        config.build_run_completion_duration_buckets,
    )
    _state.build_run_ramp_up = HistogramVec(
        "build_buildrun_rampup_duration_seconds",
        "BuildRun ramp-up duration in seconds "
        "(time between buildrun creation and taskrun creation).",
        build_run_labels,
        ramp_up,
    )
    _state.task_run_ramp_up = HistogramVec(
        "build_buildrun_taskrun_rampup_duration_seconds",
        "BuildRun taskrun ramp-up duration in seconds "
        "(time between taskrun creation and taskrun pod creation).",
        build_run_labels,
        ramp_up,
    )
    _state.task_run_pod_ramp_up = HistogramVec(
        "build_buildrun_taskrun_pod_rampup_duration_seconds",
        "BuildRun taskrun pod ramp-up duration in seconds "
        "(time between pod creation and last init container completion).",
        build_run_labels,
        ramp_up,
    )
    registry.register(
        _state.build_count,
        _state.build_run_count,
        _state.establish,
        _state.completion,
        _state.build_run_ramp_up,
        _state.task_run_ramp_up,
        _state.task_run_pod_ramp_up,
    )


def _labels(build_strategy: str, namespace: str, build: str, build_run: str | None = None):
    candidates = {
        BUILD_STRATEGY_LABEL: build_strategy,
        NAMESPACE_LABEL: namespace,
        BUILD_LABEL: build,
    }
    if build_run is not None:
        candidates[BUILD_RUN_LABEL] = build_run
    return {k: v for k, v in candidates.items() if k in _state.enabled}


def _seconds(duration: timedelta | float) -> float:
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def build_count_inc(build_strategy: str, namespace: str, build: str) -> None:
    """Count a registered Build."""
    if _state.build_count is not None:
        _state.build_count.inc(_labels(build_strategy, namespace, build))


def build_run_count_inc(build_strategy: str, namespace: str, build: str, build_run: str) -> None:
    """Count a BuildRun."""
    if _state.build_run_count is not None:
        _state.build_run_count.inc(_labels(build_strategy, namespace, build, build_run))


def _observe(histogram, build_strategy, namespace, build, build_run, duration) -> None:
    if histogram is not None:
        histogram.observe(_labels(build_strategy, namespace, build, build_run), _seconds(duration))


def build_run_establish_observe(build_strategy, namespace, build, build_run, duration) -> None:
    """Record the time between BuildRun creation and its start."""
    _observe(_state.establish, build_strategy, namespace, build, build_run, duration)


def build_run_completion_observe(build_strategy, namespace, build, build_run, duration) -> None:
    """Record the time between BuildRun creation and its completion."""
    _observe(_state.completion, build_strategy, namespace, build, build_run, duration)


def build_run_ramp_up_duration_observe(
    build_strategy, namespace, build, build_run, duration
) -> None:
    """Record the time between BuildRun creation and TaskRun creation."""
    _observe(_state.build_run_ramp_up, build_strategy, namespace, build, build_run, duration)


def task_run_ramp_up_duration_observe(
    build_strategy, namespace, build, build_run, duration
) -> None:
    """Record the time between TaskRun creation and pod creation."""
    _observe(_state.task_run_ramp_up, build_strategy, namespace, build, build_run, duration)


def task_run_pod_ramp_up_duration_observe(
    build_strategy, namespace, build, build_run, duration
) -> None:
    """Record the time between pod creation and the last init container finishing."""
    _observe(_state.task_run_pod_ramp_up, build_strategy, namespace, build, build_run, duration)