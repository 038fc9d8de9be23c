"""Workload driver core module.

This module holds the pieces shared by the REST and WebSocket workloads: the
run configuration, the per-iteration context, a thin aiohttp transport that
never raises for network failures, a JSON validator that never raises for
malformed bodies, and a constant-VU executor that runs iterations
concurrently for a fixed duration.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import aiohttp
import yaml

from workload_metrics import (
    MetricSink,
    evaluate_thresholds,
    log_summary,
    log_threshold_results,
    parse_thresholds,
)

LOGGER = logging.getLogger("workload")

HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQS = "http_reqs"
HTTP_REQ_FAILED = "http_req_failed"

BODY_PREVIEW_BYTES = 100

EXIT_PASS = 0
EXIT_THRESHOLD_BREACH = 1
EXIT_CONFIG_ERROR = 2


@dataclass(frozen=True)
class Response:
    """Outcome of one HTTP request; ``status`` is None when the transport failed."""

    status: Optional[int]
    body: bytes = b""
    duration_ms: float = 0.0
    error: Optional[str] = None
    url: str = ""


@dataclass(frozen=True)
class Decoded:
    value: Any


@dataclass(frozen=True)
class DecodeFailed:
    reason: str


DecodeResult = Union[Decoded, DecodeFailed]


@dataclass(frozen=True)
class IterationResult:
    success: bool
    duration_ms: float


@dataclass
class WorkloadConfig:
    """Configuration holder for one scenario run."""

    base_url: str = ""
    ws_url: str = ""
    vus: int = 10
    duration: float = 10.0
    start_time: float = 0.0
    timeout_seconds: float = 10.0
    session_timeout: float = 5.0
    close_grace: float = 1.0
    headers: Dict[str, str] = field(default_factory=dict)
    thresholds: Dict[str, List[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.vus <= 0:
            raise ValueError("vus must be a positive integer")
        if self.duration <= 0:
            raise ValueError("duration must be a positive number")
        if self.start_time < 0:
            raise ValueError("start_time cannot be negative")
        if self.timeout_seconds <= 0 or self.session_timeout <= 0:
            raise ValueError("timeouts must be positive numbers")
        if self.close_grace < 0:
            raise ValueError("close_grace cannot be negative")

        if self.base_url:
            if not self.base_url.startswith(("http://", "https://")):
                self.base_url = f"http://{self.base_url}"
            self.base_url = self.base_url.rstrip("/")

        if self.ws_url and not self.ws_url.startswith(("ws://", "wss://")):
            raise ValueError("ws_url must use the ws:// or wss:// scheme")

        merged_headers = {"User-Agent": "workload-driver/1.0"}
        merged_headers.update(self.headers)
        self.headers = merged_headers

        # Fail on a malformed threshold before any traffic is sent
        parse_thresholds(self.thresholds)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "WorkloadConfig":
        """Build a config object from a plain dict."""

        return cls(**raw)


@dataclass(frozen=True)
class IterationContext:
    """Identity of the running iteration, handed to every iteration function."""

    vu: int
    iteration: int
    config: WorkloadConfig


IterationFn = Callable[[aiohttp.ClientSession, IterationContext, MetricSink], Awaitable[IterationResult]]


def _preview(body: bytes) -> str:
    return body[:BODY_PREVIEW_BYTES].decode("utf-8", errors="replace")


def decode_json(response: Response) -> DecodeResult:
    """Decode the response body as JSON without ever raising."""

    try:
        return Decoded(json.loads(response.body))
    except (ValueError, RecursionError) as exc:
        LOGGER.warning("Failed to parse JSON: %s...", _preview(response.body))
        return DecodeFailed(f"{exc.__class__.__name__}: {exc}")


def validate_json_response(response: Optional[Response], context: str) -> Any:
    """Return the decoded body of a successful JSON response, or None."""

    if response is None:
        LOGGER.info("%s: No response received", context)
        return None
    if response.status != 200:
        LOGGER.info("%s: Status %s", context, response.status)
        return None
    try:
        return json.loads(response.body)
    except (ValueError, RecursionError):
        LOGGER.info("%s: Invalid JSON - %s...", context, _preview(response.body))
        return None


async def fetch(
    session: aiohttp.ClientSession,
    url: str,
    *,
    name: str,
    sink: MetricSink,
    params: Optional[Mapping[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Response:
    """GET ``url`` and record its timing under ``http_req_duration{name}``."""

    status: Optional[int] = None
    body = b""
    error: Optional[str] = None
    started = time.monotonic()
    try:
        async with session.get(url, params=params, headers=headers) as response:
            body = await response.read()
            status = response.status
    except asyncio.TimeoutError:
        error = "timeout"
    except aiohttp.ClientResponseError as exc:
        status, error = exc.status, exc.__class__.__name__
    except aiohttp.ClientError as exc:
        error = exc.__class__.__name__
    except Exception as exc:  # pragma: no cover - defensive logging
        LOGGER.exception("Unexpected error during request: %s", exc)
        error = exc.__class__.__name__
    duration_ms = (time.monotonic() - started) * 1000.0

    tags = {"name": name, "status": str(status) if status is not None else "0"}
    sink.trend(HTTP_REQ_DURATION).add(duration_ms, tags)
    sink.counter(HTTP_REQS).add(1, tags)
    sink.rate(HTTP_REQ_FAILED).add(status is None or status >= 400, tags)

    LOGGER.debug("GET %s name=%s status=%s error=%s %.1fms", url, name, status, error, duration_ms)
    return Response(status=status, body=body, duration_ms=duration_ms, error=error, url=url)


def log_test_start(test_name: str, ctx: IterationContext) -> None:
    LOGGER.debug("Starting %s - VU %d Iteration %d", test_name, ctx.vu, ctx.iteration)


def log_test_end(test_name: str, ctx: IterationContext, success: bool) -> None:
    LOGGER.debug("%s Finished %s - VU %d", "PASS" if success else "FAIL", test_name, ctx.vu)


@dataclass
class ScenarioStats:
    iterations: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: int = 0
    elapsed: float = 0.0

    def record(self, result: IterationResult) -> None:
        self.iterations += 1
        if result.success:
            self.succeeded += 1
        else:
            self.failed += 1


async def run_scenario(
    config: WorkloadConfig,
    iteration: IterationFn,
    sink: Optional[MetricSink] = None,
    *,
    stop_event: Optional[asyncio.Event] = None,
    install_signals: bool = True,
) -> ScenarioStats:
    """Run ``config.vus`` workers executing iterations back to back for ``config.duration``."""

    sink = sink if sink is not None else MetricSink()
    stop_event = stop_event if stop_event is not None else asyncio.Event()
    stats = ScenarioStats()
    loop = asyncio.get_running_loop()
    if install_signals:
        _install_signal_handlers(loop, stop_event)

    try:
        if config.start_time:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=config.start_time)
            except asyncio.TimeoutError:
                pass

        timeout = aiohttp.ClientTimeout(total=config.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout, headers=config.headers) as session:
            LOGGER.info(
                "Starting %d VUs for %.1fs against %s",
                config.vus,
                config.duration,
                config.base_url or config.ws_url,
            )
            start = time.monotonic()
            deadline = start + config.duration

            async def worker(vu: int) -> None:
                number = 0
                while not stop_event.is_set() and time.monotonic() < deadline:
                    ctx = IterationContext(vu=vu, iteration=number, config=config)
                    try:
                        result = await iteration(session, ctx, sink)
                    except Exception as exc:
                        stats.errors += 1
                        LOGGER.exception("VU %d iteration %d raised %s", vu, number, exc)
                    else:
                        stats.record(result)
                    number += 1

            try:
                await asyncio.gather(*(worker(vu) for vu in range(1, config.vus + 1)))
            finally:
                stats.elapsed = time.monotonic() - start
                LOGGER.info(
                    "FINAL %.1fs iterations=%d succeeded=%d failed=%d errors=%d",
                    stats.elapsed,
                    stats.iterations,
                    stats.succeeded,
                    stats.failed,
                    stats.errors,
                )
    finally:
        if install_signals:
            _remove_signal_handlers(loop)
    return stats


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Install SIGINT/SIGTERM handlers to stop the run gracefully."""

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows / restricted envs
            LOGGER.debug("Signal handlers not supported on this platform")
            break


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):  # pragma: no cover
            break


def load_config_file(path: Path) -> Dict[str, Any]:
    """Load a configuration file in YAML or JSON format."""

    suffix = path.suffix.lower()
    text = path.read_text()
    if suffix in {".yaml", ".yml"}:
        data = yaml.safe_load(text) or {}
        return dict(data)
    if suffix == ".json":
        data = json.loads(text or "{}")
        return dict(data)
    raise ValueError(f"Unsupported configuration file format: {suffix}")


def build_config(
    defaults: Dict[str, Any],
    config_path: Optional[Path] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> WorkloadConfig:
    """Merge defaults, an optional config file and CLI overrides into a config."""

    merged = dict(defaults)
    if config_path is not None:
        merged.update(load_config_file(config_path))
    for key, value in (overrides or {}).items():
        if value is not None:
            merged[key] = value
    return WorkloadConfig.from_dict(merged)


def setup_logging(level: str = "INFO") -> None:
    """Configure basic logging output."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def run_with_config(config: WorkloadConfig, iteration: IterationFn) -> int:
    """Run a scenario with asyncio.run, report it and return the exit code."""

    sink = MetricSink()

    async def _runner() -> None:
        await run_scenario(config, iteration, sink)

    asyncio.run(_runner())
    log_summary(sink)
    passed = log_threshold_results(evaluate_thresholds(sink, config.thresholds))
    return EXIT_PASS if passed else EXIT_THRESHOLD_BREACH
