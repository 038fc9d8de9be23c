"""Metric sink and threshold evaluation for the workload driver.

Iterations push observations into a shared :class:`MetricSink`; once a run is
over the sink is summarised and the declared thresholds are evaluated against
the aggregated values.
"""

from __future__ import annotations

import enum
import logging
import math
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

LOGGER = logging.getLogger("workload.metrics")

CHECKS_METRIC = "checks"


class MetricKind(str, enum.Enum):
    TREND = "trend"
    RATE = "rate"
    COUNTER = "counter"


@dataclass(frozen=True)
class Observation:
    name: str
    kind: MetricKind
    value: float
    tags: Mapping[str, str] = field(default_factory=dict)
    timestamp: float = 0.0


class _MetricHandle:
    """Named channel bound to a sink; ``add`` appends one observation."""

    def __init__(self, sink: "MetricSink", name: str, kind: MetricKind) -> None:
        self.sink = sink
        self.name = name
        self.kind = kind

    def add(self, value: Any, tags: Optional[Mapping[str, str]] = None) -> None:
        self.sink.add(self.name, self.kind, value, tags)


class MetricSink:
    """Append-only store of observations, safe to share between workers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._kinds: Dict[str, MetricKind] = {}
        self._observations: List[Observation] = []

    def trend(self, name: str) -> _MetricHandle:
        return self._register(name, MetricKind.TREND)

    def rate(self, name: str) -> _MetricHandle:
        return self._register(name, MetricKind.RATE)

    def counter(self, name: str) -> _MetricHandle:
        return self._register(name, MetricKind.COUNTER)

    def _register(self, name: str, kind: MetricKind) -> _MetricHandle:
        with self._lock:
            existing = self._kinds.setdefault(name, kind)
        if existing is not kind:
            raise ValueError(f"Metric '{name}' already registered as {existing.value}")
        return _MetricHandle(self, name, kind)

    def add(
        self,
        name: str,
        kind: MetricKind,
        value: Any,
        tags: Optional[Mapping[str, str]] = None,
    ) -> Observation:
        if kind is MetricKind.RATE:
            numeric = 1.0 if value else 0.0
        else:
            numeric = float(value)
            if math.isnan(numeric):
                raise ValueError(f"Metric '{name}' received NaN")
            if kind is MetricKind.COUNTER and numeric < 0:
                raise ValueError(f"Counter '{name}' cannot decrease")

        with self._lock:
            existing = self._kinds.setdefault(name, kind)
            if existing is not kind:
                raise ValueError(f"Metric '{name}' already registered as {existing.value}")
            observation = Observation(name, kind, numeric, dict(tags or {}), self._clock())
            self._observations.append(observation)
        return observation

    def kind_of(self, name: str) -> Optional[MetricKind]:
        with self._lock:
            return self._kinds.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._kinds)

    def observations(
        self, name: Optional[str] = None, tags: Optional[Mapping[str, str]] = None
    ) -> List[Observation]:
        """Return a snapshot of observations, optionally filtered by name and tags."""

        with self._lock:
            snapshot = list(self._observations)
        wanted = dict(tags or {})
        return [
            obs
            for obs in snapshot
            if (name is None or obs.name == name)
            and all(obs.tags.get(key) == value for key, value in wanted.items())
        ]

    def values(self, name: str, tags: Optional[Mapping[str, str]] = None) -> List[float]:
        return [obs.value for obs in self.observations(name, tags)]

    def aggregate(self, name: str, tags: Optional[Mapping[str, str]] = None) -> Dict[str, float]:
        kind = self.kind_of(name)
        values = self.values(name, tags)
        if kind is MetricKind.TREND:
            return _trend_stats(values)
        if kind is MetricKind.RATE:
            passes = sum(1 for value in values if value)
            total = len(values)
            return {
                "passes": float(passes),
                "fails": float(total - passes),
                "rate": passes / total if total else 0.0,
                "count": float(total),
            }
        if kind is MetricKind.COUNTER:
            return {"count": float(sum(values)), "samples": float(len(values))}
        return {}

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {name: self.aggregate(name) for name in self.names()}


def percentile(values: Iterable[float], pct: float) -> float:
    """Linear-interpolated percentile (0-100) of ``values``."""

    ordered = sorted(values)
    if not ordered:
        raise ValueError("percentile of empty sequence")
    if len(ordered) == 1:
        return ordered[0]
    rank = (len(ordered) - 1) * (pct / 100.0)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return ordered[int(rank)]
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def _trend_stats(values: List[float]) -> Dict[str, float]:
    if not values:
        return {"count": 0.0}
    return {
        "count": float(len(values)),
        "avg": sum(values) / len(values),
        "min": min(values),
        "med": percentile(values, 50),
        "max": max(values),
        "p(90)": percentile(values, 90),
        "p(95)": percentile(values, 95),
    }


def check(sink: MetricSink, value: Any, checks: Mapping[str, Callable[[Any], Any]]) -> bool:
    """Evaluate every named predicate against ``value`` and record each outcome.

    All predicates run even when an earlier one fails. A predicate that raises
    counts as a failed check. Returns True only when every check passed.
    """

    rate = sink.rate(CHECKS_METRIC)
    all_passed = True
    for name, predicate in checks.items():
        try:
            passed = bool(predicate(value))
        except Exception as exc:
            LOGGER.warning("Check '%s' raised %s: %s", name, exc.__class__.__name__, exc)
            passed = False
        rate.add(passed, {"check": name})
        if not passed:
            LOGGER.debug("Check failed: %s", name)
            all_passed = False
    return all_passed


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

_SELECTOR_RE = re.compile(r"^\s*(?P<name>[A-Za-z_][\w.]*)\s*(?:\{(?P<tags>[^}]*)\})?\s*$")
_EXPRESSION_RE = re.compile(
    r"^\s*(?P<agg>p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)|avg|min|max|med|rate|count)"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*(?P<limit>-?\d+(?:\.\d+)?)\s*$"
)

_OPERATORS: Dict[str, Callable[[float, float], bool]] = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "==": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}


def parse_selector(selector: str) -> Tuple[str, Dict[str, str]]:
    """Split ``metric{tag:value,...}`` into the metric name and a tag filter."""

    match = _SELECTOR_RE.match(selector)
    if not match:
        raise ValueError(f"Invalid metric selector '{selector}'")
    tags: Dict[str, str] = {}
    raw_tags = match.group("tags")
    if raw_tags:
        for part in raw_tags.split(","):
            key, sep, value = part.partition(":")
            if not sep or not key.strip():
                raise ValueError(f"Invalid tag filter '{part}' in '{selector}'")
            tags[key.strip()] = value.strip()
    return match.group("name"), tags


@dataclass(frozen=True)
class Threshold:
    selector: str
    expression: str
    metric: str
    tags: Mapping[str, str]
    aggregation: str
    operator: str
    limit: float

    @classmethod
    def parse(cls, selector: str, expression: str) -> "Threshold":
        metric, tags = parse_selector(selector)
        match = _EXPRESSION_RE.match(expression)
        if not match:
            raise ValueError(f"Invalid threshold expression '{expression}' for '{selector}'")
        aggregation = match.group("agg").replace(" ", "")
        if match.group("pct") is not None:
            pct = float(match.group("pct"))
            if not 0 <= pct <= 100:
                raise ValueError(f"Percentile out of range in '{expression}'")
            aggregation = f"p({match.group('pct')})"
        return cls(
            selector=selector,
            expression=expression,
            metric=metric,
            tags=tags,
            aggregation=aggregation,
            operator=match.group("op"),
            limit=float(match.group("limit")),
        )

    def observed(self, sink: MetricSink) -> Optional[float]:
        kind = sink.kind_of(self.metric)
        values = sink.values(self.metric, self.tags)
        if kind is None or not values:
            return None

        if self.aggregation.startswith("p("):
            return percentile(values, float(self.aggregation[2:-1]))
        if self.aggregation == "rate":
            return sum(1 for value in values if value) / len(values)
        if self.aggregation == "count":
            return float(sum(values)) if kind is MetricKind.COUNTER else float(len(values))
        if self.aggregation == "avg":
            return sum(values) / len(values)
        if self.aggregation == "min":
            return min(values)
        if self.aggregation == "max":
            return max(values)
        return percentile(values, 50)


@dataclass(frozen=True)
class ThresholdResult:
    threshold: Threshold
    observed: Optional[float]
    passed: bool


def parse_thresholds(declarations: Mapping[str, Iterable[str]]) -> List[Threshold]:
    thresholds = []
    for selector, expressions in declarations.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            thresholds.append(Threshold.parse(selector, expression))
    return thresholds


def evaluate_thresholds(
    sink: MetricSink, declarations: Mapping[str, Iterable[str]]
) -> List[ThresholdResult]:
    """Evaluate declared thresholds; a metric without samples fails its rules."""

    results = []
    for threshold in parse_thresholds(declarations):
        observed = threshold.observed(sink)
        passed = observed is not None and _OPERATORS[threshold.operator](observed, threshold.limit)
        results.append(ThresholdResult(threshold, observed, passed))
    return results


def log_summary(sink: MetricSink, *, final: bool = True) -> None:
    """Emit one line per metric with its aggregated values."""

    label = "FINAL" if final else "SUMMARY"
    for name, stats in sink.summary().items():
        parts = " | ".join(f"{key}={value:.2f}" for key, value in stats.items())
        LOGGER.info("%s %s %s", label, name, parts)


def log_threshold_results(results: Iterable[ThresholdResult]) -> bool:
    """Log every threshold verdict; return True when all of them passed."""

    all_passed = True
    for result in results:
        observed = "n/a" if result.observed is None else f"{result.observed:.3f}"
        verdict = "PASS" if result.passed else "FAIL"
        log = LOGGER.info if result.passed else LOGGER.warning
        log(
            "%s %s: %s (observed=%s)",
            verdict,
            result.threshold.selector,
            result.threshold.expression,
            observed,
        )
        all_passed = all_passed and result.passed
    return all_passed
