"""Shared fixtures: metric sinks, iteration contexts and local aiohttp servers."""

import asyncio
from typing import Dict, Optional, Tuple

import pytest
import pytest_asyncio
from aiohttp import WSMsgType, web
from aiohttp.test_utils import TestServer, unused_port

from workload_core import IterationContext, WorkloadConfig
from workload_metrics import MetricSink

USER = {"id": 1, "name": "Leanne Graham", "email": "Sincere@april.biz"}
POSTS = [{"userId": 1, "id": 1, "title": "sunt aut facere"}]
COMMENTS = [{"postId": 1, "id": 1, "email": "Eliseo@gardner.biz"}]


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    def __init__(self, *, fail_send: bool = False, hang_close: bool = False) -> None:
        self.fail_send = fail_send
        self.hang_close = hang_close
        self.sent = []
        self.closed = False
        self.close_calls = 0

    async def send_str(self, data: str) -> None:
        if self.fail_send:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)

    async def close(self) -> bool:
        self.close_calls += 1
        if self.hang_close:
            await asyncio.sleep(30)
        self.closed = True
        return True


@pytest.fixture
def sink():
    return MetricSink()


@pytest.fixture
def make_ctx():
    def _make(vu: int = 1, iteration: int = 0, **overrides) -> IterationContext:
        options = {"base_url": "http://127.0.0.1:1", "ws_url": "ws://127.0.0.1:1/ws"}
        options.update(overrides)
        return IterationContext(vu=vu, iteration=iteration, config=WorkloadConfig(**options))

    return _make


@pytest.fixture
def refused_port():
    return unused_port()


def rest_app(overrides: Optional[Dict[str, Tuple[int, str]]] = None) -> web.Application:
    """JSON API with users/posts/comments; ``overrides`` maps a label to (status, raw body)."""

    overrides = overrides or {}
    app = web.Application()
    app["seen"] = []

    def route(label, payload):
        async def handler(request):
            app["seen"].append((request.path, dict(request.query)))
            if label in overrides:
                status, body = overrides[label]
                return web.Response(status=status, text=body, content_type="application/json")
            return web.json_response(payload)

        return handler

    app.router.add_get("/users/1", route("GetUser", USER))
    app.router.add_get("/posts", route("GetPosts", POSTS))
    app.router.add_get("/comments", route("GetComments", COMMENTS))
    return app


def ws_app(mode: str = "echo") -> web.Application:
    """WebSocket server at /ws: ``echo``, ``silent``, ``close`` or ``empty``."""

    app = web.Application()
    app["received"] = []

    async def handler(request):
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        if mode == "close":
            await ws.close()
            return ws
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                app["received"].append(msg.data)
                if mode == "echo":
                    await ws.send_str(msg.data)
                elif mode == "empty":
                    await ws.send_str("")
        return ws

    async def plain(request):
        return web.Response(text="not a websocket")

    app.router.add_get("/ws", handler)
    app.router.add_get("/plain", plain)
    return app


@pytest_asyncio.fixture
async def start_server():
    servers = []

    async def _start(app: web.Application) -> TestServer:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        await server.close()
