"""WebSocket session workload.

Each iteration opens one WebSocket, sends a single JSON probe, waits for any
non-empty reply and closes. The session is an explicit state machine:

    CONNECTING -> OPEN -> AWAITING_ECHO -> CLOSING -> CLOSED
         \\___________\\___________\\__________\\_____-> FAILED

A watchdog armed when the session starts forces a close (or resolves the
iteration outright) if no terminal state is reached before the deadline.
Whatever path ends the session, its duration and outcome are recorded once.
"""

from __future__ import annotations

import argparse
import asyncio
import enum
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

import aiohttp

from workload_core import (
    EXIT_CONFIG_ERROR,
    IterationContext,
    IterationResult,
    build_config,
    log_test_end,
    log_test_start,
    run_with_config,
    setup_logging,
)
from workload_metrics import MetricSink, check

LOGGER = logging.getLogger("workload.websocket")

SUITE_NAME = "WebSocket Test Suite"

WEBSOCKET_SCENARIO: Dict[str, Any] = {
    "vus": 10,
    "duration": 10.0,
    "start_time": 0.0,
}

WEBSOCKET_THRESHOLDS: Dict[str, list] = {
    "websocket_success_rate": ["rate>0.85"],
    "websocket_session_duration": ["p(95)<2500"],
}

DEFAULT_WS_URL = "wss://echo.websocket.org"

_TRANSPORT_ERRORS = (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError)


class SessionState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    AWAITING_ECHO = "awaiting_echo"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({SessionState.CLOSED, SessionState.FAILED})


class WebSocketSession:
    """One WebSocket iteration driven by open/message/close/error/timeout events."""

    def __init__(
        self,
        ctx: IterationContext,
        sink: MetricSink,
        *,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        close_grace: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self.sink = sink
        self.url = url or ctx.config.ws_url
        self.timeout = ctx.config.session_timeout if timeout is None else timeout
        self.close_grace = ctx.config.close_grace if close_grace is None else close_grace
        self.state = SessionState.CONNECTING
        self.success = False
        self.started_at: Optional[float] = None
        self.result: Optional[IterationResult] = None
        self._clock = clock
        self._ws: Any = None
        self._done: Optional[asyncio.Future] = None

        self._duration = sink.trend("websocket_session_duration")
        self._success_rate = sink.rate("websocket_success_rate")
        self._messages = sink.counter("websocket_total_messages")

    @property
    def resolved(self) -> bool:
        return self.result is not None

    def probe(self) -> Dict[str, Any]:
        return {
            "type": "test",
            "vu": self.ctx.vu,
            "iteration": self.ctx.iteration,
            "timestamp": int(time.time() * 1000),
        }

    def start(self) -> None:
        """Arm the session: record the start time and create the completion future."""

        self._done = asyncio.get_running_loop().create_future()
        self.started_at = self._clock()
        self.state = SessionState.CONNECTING
        LOGGER.info("VU %d connecting to WebSocket...", self.ctx.vu)

    def _transition(self, state: SessionState) -> None:
        LOGGER.debug("VU %d %s -> %s", self.ctx.vu, self.state.value, state.value)
        self.state = state

    def _discard(self, event: str) -> bool:
        if self.resolved:
            LOGGER.debug("VU %d discarding %s after %s", self.ctx.vu, event, self.state.value)
            return True
        return False

    def _resolve(self, state: SessionState, success: bool) -> bool:
        """Record the terminal outcome; later calls are no-ops."""

        if self.resolved:
            return False
        self._transition(state)
        started = self.started_at if self.started_at is not None else self._clock()
        duration_ms = (self._clock() - started) * 1000.0
        self.result = IterationResult(success=success, duration_ms=duration_ms)
        self._duration.add(duration_ms)
        self._success_rate.add(success)
        if self._done is not None and not self._done.done():
            self._done.set_result(self.result)
        return True

    # -- events ------------------------------------------------------------

    async def on_open(self, ws: Any) -> None:
        if self._discard("open"):
            return
        self._ws = ws
        self._transition(SessionState.OPEN)
        check(self.sink, ws, {"WebSocket connection established": lambda socket: socket is not None})
        LOGGER.info("VU %d connected", self.ctx.vu)

        try:
            await ws.send_str(json.dumps(self.probe()))
        except _TRANSPORT_ERRORS as exc:
            self.on_error(exc)
            return
        self._messages.add(1)
        if self.state is SessionState.OPEN:
            self._transition(SessionState.AWAITING_ECHO)

    async def on_message(self, data: Any) -> None:
        if self._discard("message"):
            return
        LOGGER.info("VU %d received: %s", self.ctx.vu, str(data)[:100])
        if not check(self.sink, data, {"received response": lambda d: d is not None and len(d) > 0}):
            return
        self.success = True
        if self.state in (SessionState.OPEN, SessionState.AWAITING_ECHO):
            self._transition(SessionState.CLOSING)
            await self._close()

    def on_close(self) -> None:
        if self._discard("close"):
            return
        LOGGER.info("VU %d disconnected", self.ctx.vu)
        self._resolve(SessionState.CLOSED, self.success)

    def on_error(self, error: Optional[BaseException]) -> None:
        if self._discard("error"):
            return
        LOGGER.error("VU %d WebSocket error: %s", self.ctx.vu, error)
        self._resolve(SessionState.FAILED, False)

    async def on_timeout(self) -> None:
        if self._discard("timeout"):
            return
        if self.state is SessionState.CLOSING:
            LOGGER.warning("VU %d close was never confirmed", self.ctx.vu)
            self._resolve(SessionState.CLOSED, self.success)
        elif self._ws is not None and not self._ws.closed:
            LOGGER.info("VU %d timeout, closing connection", self.ctx.vu)
            self._transition(SessionState.CLOSING)
            await self._close()
        else:
            LOGGER.info("VU %d timeout before the connection opened", self.ctx.vu)
            self._resolve(SessionState.FAILED, False)

    # -- driving -----------------------------------------------------------

    async def _close(self) -> None:
        try:
            await asyncio.wait_for(self._ws.close(), timeout=self.close_grace)
        except asyncio.TimeoutError:
            LOGGER.warning("VU %d close not confirmed within %.1fs", self.ctx.vu, self.close_grace)
        except (aiohttp.ClientError, ConnectionError) as exc:
            LOGGER.debug("VU %d error while closing: %s", self.ctx.vu, exc)
        self.on_close()

    async def _drive(self, session: aiohttp.ClientSession) -> None:
        try:
            try:
                ws = await session.ws_connect(self.url)
            except _TRANSPORT_ERRORS as exc:
                LOGGER.error("VU %d connection failed: %s", self.ctx.vu, exc)
                self.on_error(exc)
                return

            if self.resolved:
                await ws.close()
                return
            await self.on_open(ws)

            async for message in ws:
                if message.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self.on_message(message.data)
                elif message.type is aiohttp.WSMsgType.ERROR:
                    self.on_error(ws.exception())
                if self.resolved:
                    return
            self.on_close()
        except Exception as exc:
            self.on_error(exc)

    async def _watchdog(self) -> None:
        await asyncio.sleep(self.timeout)
        await self.on_timeout()

    async def run(self, session: aiohttp.ClientSession) -> IterationResult:
        """Drive the session to exactly one terminal outcome and return it."""

        self.start()
        assert self._done is not None
        driver = asyncio.ensure_future(self._drive(session))
        watchdog = asyncio.ensure_future(self._watchdog())
        try:
            await self._done
        finally:
            for task in (driver, watchdog):
                task.cancel()
            await asyncio.gather(driver, watchdog, return_exceptions=True)
            if self._ws is not None and not self._ws.closed:
                try:
                    await asyncio.wait_for(self._ws.close(), timeout=self.close_grace)
                except (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError):
                    LOGGER.debug("VU %d socket left closing", self.ctx.vu)
        return self._done.result()


async def run_websocket_suite(
    session: aiohttp.ClientSession, ctx: IterationContext, sink: MetricSink
) -> IterationResult:
    log_test_start(SUITE_NAME, ctx)
    result = await WebSocketSession(ctx, sink).run(session)
    log_test_end(SUITE_NAME, ctx, result.success)
    return result


def default_config() -> Dict[str, Any]:
    config = dict(WEBSOCKET_SCENARIO)
    config["ws_url"] = DEFAULT_WS_URL
    config["thresholds"] = {key: list(value) for key, value in WEBSOCKET_THRESHOLDS.items()}
    return config


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Run the WebSocket scenario with its default declarations."""

    parser = argparse.ArgumentParser(description="WebSocket session workload")
    parser.add_argument("--config", type=Path, default=None, help="Optional YAML/JSON config file")
    parser.add_argument("--ws-url", type=str, default=None, help="Override the WebSocket endpoint")
    parser.add_argument("--vus", type=int, default=None, help="Override concurrent virtual users")
    parser.add_argument("--duration", type=float, default=None, help="Override run duration (seconds)")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level (DEBUG, INFO, ...)")
    args = parser.parse_args(list(argv) if argv is not None else None)

    setup_logging(args.log_level)
    try:
        config = build_config(
            default_config(),
            args.config,
            {"ws_url": args.ws_url, "vus": args.vus, "duration": args.duration},
        )
    except (OSError, TypeError, ValueError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR
    return run_with_config(config, run_websocket_suite)


if __name__ == "__main__":  # pragma: no cover - CLI usage
    sys.exit(main())
