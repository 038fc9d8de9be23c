"""REST check pipeline against a local JSON API."""

import aiohttp
import pytest

import rest_workload
from conftest import rest_app
from workload_core import HTTP_REQ_DURATION, IterationContext, Response, WorkloadConfig
from workload_metrics import CHECKS_METRIC, evaluate_thresholds


def _ctx(base_url, iteration=0):
    return IterationContext(vu=1, iteration=iteration, config=WorkloadConfig(base_url=base_url))


def _checks(sink, name):
    return sink.values(CHECKS_METRIC, {"check": name})


async def _run(server_or_url, sink, iteration=0):
    base_url = server_or_url if isinstance(server_or_url, str) else str(server_or_url.make_url("/")).rstrip("/")
    async with aiohttp.ClientSession() as session:
        return await rest_workload.run_rest_suite(session, _ctx(base_url, iteration), sink)


@pytest.mark.integration
@pytest.mark.asyncio
class TestRestSuite:
    async def test_happy_path(self, sink, start_server):
        server = await start_server(rest_app())
        result = await _run(server, sink)

        assert result.success is True
        assert sink.values("rest_success_rate") == [1.0]
        assert sink.values("rest_total_requests") == [3.0]
        step_durations = sink.values(HTTP_REQ_DURATION)
        assert len(step_durations) == 3
        assert sink.values("rest_request_duration") == [pytest.approx(sum(step_durations))]
        assert result.duration_ms == pytest.approx(sum(step_durations))
        assert all(sink.values(CHECKS_METRIC))
        assert len(sink.values(CHECKS_METRIC)) == 10

    async def test_steps_use_fixed_filters_in_order(self, sink, start_server):
        server = await start_server(rest_app())
        await _run(server, sink)

        assert server.app["seen"] == [
            ("/users/1", {}),
            ("/posts", {"userId": "1"}),
            ("/comments", {"postId": "1"}),
        ]

    async def test_each_step_is_tagged_by_label(self, sink, start_server):
        server = await start_server(rest_app())
        await _run(server, sink)

        for label in ("GetUser", "GetPosts", "GetComments"):
            assert len(sink.values(HTTP_REQ_DURATION, {"name": label})) == 1

    async def test_partial_failure_keeps_evaluating(self, sink, start_server):
        server = await start_server(rest_app({"GetPosts": (500, '{"error": "boom"}')}))
        result = await _run(server, sink)

        assert result.success is False
        assert sink.values("rest_success_rate") == [0.0]
        assert len(sink.values("rest_request_duration")) == 1
        assert len(sink.values(HTTP_REQ_DURATION)) == 3
        assert _checks(sink, "posts status is 200") == [0.0]
        assert _checks(sink, "user has email") == [1.0]
        assert _checks(sink, "comments array not empty") == [1.0]

    async def test_malformed_json_fails_checks_not_outcome(self, sink, start_server):
        server = await start_server(rest_app({"GetUser": (200, "<html>maintenance</html>")}))
        result = await _run(server, sink)

        assert result.success is True
        assert _checks(sink, "user status is 200") == [1.0]
        assert _checks(sink, "user response is JSON") == [0.0]
        assert _checks(sink, "user has name") == [0.0]
        assert _checks(sink, "user has email") == [0.0]

    async def test_missing_field_and_empty_collection(self, sink, start_server):
        overrides = {"GetUser": (200, '{"name": "only name"}'), "GetComments": (200, "[]")}
        server = await start_server(rest_app(overrides))
        await _run(server, sink)

        assert _checks(sink, "user has name") == [1.0]
        assert _checks(sink, "user has email") == [0.0]
        assert _checks(sink, "comments array not empty") == [0.0]
        assert _checks(sink, "posts array not empty") == [1.0]

    async def test_transport_failure_still_records_one_outcome(self, sink, refused_port):
        result = await _run(f"http://127.0.0.1:{refused_port}", sink)

        assert result.success is False
        assert sink.values("rest_success_rate") == [0.0]
        assert len(sink.values("rest_request_duration")) == 1
        assert sink.values("rest_total_requests") == [3.0]
        assert _checks(sink, "user status is 200") == [0.0]

    async def test_counter_grows_by_three_per_iteration(self, sink, start_server):
        server = await start_server(rest_app({"GetComments": (503, "")}))
        for iteration in range(4):
            await _run(server, sink, iteration)

        assert sink.aggregate("rest_total_requests")["count"] == 12
        assert len(sink.values("rest_success_rate")) == 4
        assert len(sink.values("rest_request_duration")) == 4

    async def test_unexpected_error_is_contained(self, sink, monkeypatch):
        calls = []

        async def flaky_fetch(session, url, *, name, sink, params=None, headers=None):
            calls.append(name)
            if name == "GetPosts":
                raise RuntimeError("bug in transport")
            return Response(status=200, body=b'{"name": "a", "email": "b"}', duration_ms=12.5, url=url)

        monkeypatch.setattr(rest_workload, "fetch", flaky_fetch)
        result = await _run("http://api.test", sink)

        assert calls == ["GetUser", "GetPosts"]
        assert result.success is False
        assert result.duration_ms == 12.5
        assert sink.values("rest_success_rate") == [0.0]
        assert sink.values("rest_total_requests") == [3.0]

    async def test_declared_thresholds_evaluate_over_a_run(self, sink, start_server):
        server = await start_server(rest_app())
        for iteration in range(3):
            await _run(server, sink, iteration)

        results = evaluate_thresholds(sink, rest_workload.REST_THRESHOLDS)
        assert [r.threshold.selector for r in results] == [
            "rest_success_rate",
            "rest_request_duration",
            "http_req_duration{name:GetUser}",
        ]
        assert all(result.passed for result in results)


@pytest.mark.unit
def test_default_config_declares_scenario():
    config = WorkloadConfig.from_dict(rest_workload.default_config())

    assert config.vus == 10
    assert config.duration == 10.0
    assert config.base_url == "https://jsonplaceholder.typicode.com"
    assert config.thresholds["http_req_duration{name:GetUser}"] == ["p(95)<800"]


@pytest.mark.unit
def test_main_rejects_invalid_override():
    assert rest_workload.main(["--vus", "0"]) == 2
