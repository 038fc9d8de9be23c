#!/usr/bin/env python3
"""
workload.py
Run the REST or WebSocket workload from a YAML/JSON config file.

Usage:
  pip install -e .
  workload --suite rest --config rest.yaml --duration 30
  workload --suite websocket --vus 20

Exit codes: 0 when every threshold passed, 1 when one was breached,
2 when the configuration could not be loaded.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import rest_workload
import websocket_workload
from workload_core import EXIT_CONFIG_ERROR, IterationFn, build_config, run_with_config, setup_logging

log = logging.getLogger("workload")

SUITES: Dict[str, Tuple[Callable[[], Dict[str, Any]], IterationFn]] = {
    "rest": (rest_workload.default_config, rest_workload.run_rest_suite),
    "websocket": (websocket_workload.default_config, websocket_workload.run_websocket_suite),
}


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Synthetic REST/WebSocket workload driver")
    p.add_argument("--suite", choices=sorted(SUITES), required=True, help="Which workload to run")
    p.add_argument("--config", type=Path, default=None, help="Path to YAML/JSON config file")
    p.add_argument("--vus", type=int, default=None, help="Override concurrent virtual users")
    p.add_argument("--duration", type=float, default=None, help="Override run duration (seconds)")
    p.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")
    return p


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = build_argparser().parse_args(list(argv) if argv is not None else None)
    setup_logging(args.log_level)

    defaults, iteration = SUITES[args.suite]
    try:
        config = build_config(defaults(), args.config, {"vus": args.vus, "duration": args.duration})
    except (OSError, TypeError, ValueError) as exc:
        log.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR

    log.info("Starting %s workload vus=%d duration=%.1fs", args.suite, config.vus, config.duration)
    try:
        return run_with_config(config, iteration)
    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; exiting")
        return 130


if __name__ == "__main__":
    sys.exit(main())
