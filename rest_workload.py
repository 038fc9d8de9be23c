"""REST check pipeline: three independent GETs per iteration against a JSON API."""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

import aiohttp

from workload_core import (
    EXIT_CONFIG_ERROR,
    Decoded,
    DecodeResult,
    IterationContext,
    IterationResult,
    Response,
    build_config,
    decode_json,
    fetch,
    log_test_end,
    log_test_start,
    run_with_config,
    setup_logging,
)
from workload_metrics import MetricSink, check

LOGGER = logging.getLogger("workload.rest")

SUITE_NAME = "REST API Test Suite"

REST_SCENARIO: Dict[str, Any] = {
    "vus": 10,
    "duration": 10.0,
    "start_time": 0.0,
}

REST_THRESHOLDS: Dict[str, list] = {
    "rest_success_rate": ["rate>0.95"],
    "rest_request_duration": ["p(95)<1000"],
    "http_req_duration{name:GetUser}": ["p(95)<800"],
}

DEFAULT_BASE_URL = "https://jsonplaceholder.typicode.com"

Expectation = Callable[[Any], bool]


def has_fields(*names: str) -> Dict[str, Expectation]:
    return {
        f"has {name}": (lambda payload, _name=name: isinstance(payload, dict) and _name in payload)
        for name in names
    }


def non_empty_list() -> Dict[str, Expectation]:
    return {"array not empty": lambda payload: isinstance(payload, list) and len(payload) > 0}


@dataclass(frozen=True)
class RestStep:
    """One GET in the pipeline and the shape its payload must have."""

    label: str
    subject: str
    path: str
    params: Mapping[str, Any] = field(default_factory=dict)
    expectations: Mapping[str, Expectation] = field(default_factory=dict)

    def url(self, base_url: str) -> str:
        return f"{base_url}{self.path}"


# Steps 2 and 3 use fixed filter keys; no data flows between steps.
REST_STEPS: Tuple[RestStep, ...] = (
    RestStep("GetUser", "user", "/users/1", expectations=has_fields("name", "email")),
    RestStep("GetPosts", "posts", "/posts", {"userId": 1}, non_empty_list()),
    RestStep("GetComments", "comments", "/comments", {"postId": 1}, non_empty_list()),
)


def _step_checks(step: RestStep, decoded: DecodeResult) -> Dict[str, Callable[[Response], bool]]:
    payload = decoded.value if isinstance(decoded, Decoded) else None
    checks: Dict[str, Callable[[Response], bool]] = {
        f"{step.subject} status is 200": lambda r: r.status == 200,
        f"{step.subject} response is JSON": lambda _r: isinstance(decoded, Decoded),
    }
    for name, expectation in step.expectations.items():
        checks[f"{step.subject} {name}"] = (
            lambda _r, _expect=expectation: isinstance(decoded, Decoded) and _expect(payload)
        )
    return checks


async def run_step(
    session: aiohttp.ClientSession, step: RestStep, base_url: str, sink: MetricSink
) -> Response:
    response = await fetch(session, step.url(base_url), name=step.label, sink=sink, params=dict(step.params))
    decoded = decode_json(response)
    if response.error is not None:
        LOGGER.info("%s failed: %s", step.label, response.error)
    check(sink, response, _step_checks(step, decoded))
    return response


async def run_rest_suite(
    session: aiohttp.ClientSession,
    ctx: IterationContext,
    sink: MetricSink,
    steps: Iterable[RestStep] = REST_STEPS,
) -> IterationResult:
    """Run every step, then record one aggregate duration, outcome and request count."""

    steps = tuple(steps)
    responses = []
    log_test_start(SUITE_NAME, ctx)
    try:
        for step in steps:
            responses.append(await run_step(session, step, ctx.config.base_url, sink))
    except Exception as exc:
        LOGGER.exception("VU %d aborted at step %d: %s", ctx.vu, len(responses) + 1, exc)

    total_duration = sum(response.duration_ms for response in responses)
    success = len(responses) == len(steps) and all(r.status == 200 for r in responses)
    sink.trend("rest_request_duration").add(total_duration)
    sink.rate("rest_success_rate").add(success)
    sink.counter("rest_total_requests").add(len(steps))

    log_test_end(SUITE_NAME, ctx, success)
    return IterationResult(success=success, duration_ms=total_duration)


def default_config() -> Dict[str, Any]:
    config = dict(REST_SCENARIO)
    config["base_url"] = DEFAULT_BASE_URL
    config["thresholds"] = {key: list(value) for key, value in REST_THRESHOLDS.items()}
    return config


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Run the REST scenario with its default declarations."""

    parser = argparse.ArgumentParser(description="REST check workload")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML/JSON config file")
    parser.add_argument("--base-url", type=str, default=None, help="Override the API base URL")
    parser.add_argument("--vus", type=int, default=None, help="Override concurrent virtual users")
    parser.add_argument("--duration", type=float, default=None, help="Override run duration (seconds)")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")
    args = parser.parse_args(list(argv) if argv is not None else None)

    setup_logging(args.log_level)
    try:
        config = build_config(
            default_config(),
            args.config,
            {"base_url": args.base_url, "vus": args.vus, "duration": args.duration},
        )
    except (OSError, TypeError, ValueError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR
    return run_with_config(config, run_rest_suite)


if __name__ == "__main__":  # pragma: no cover - CLI usage
    sys.exit(main())
