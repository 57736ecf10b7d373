import asyncio
import json
import random
from collections import Counter
from typing import Any, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from flow_models import NETWORK_ERROR
from live_metrics import Metrics
from load_config import LoadTestConfig
from session_bundle import SessionBundle, SessionSetupError
from user_flow import ApiUserFlow, sample_without_replacement

LISTING = {"success": True, "data": [{"id": i, "name": f"challenge-{i}"} for i in range(1, 11)]}


def make_config(**overrides) -> LoadTestConfig:
    settings = dict(base_url="http://ctfd.test", api_token="tok", pacing_ms=0, detail_pacing_ms=0)
    settings.update(overrides)
    return LoadTestConfig(**settings)


def make_response(status: int, body: Any):
    resp = MagicMock()
    resp.status = status
    text = body if isinstance(body, str) else json.dumps(body)
    resp.text = AsyncMock(return_value=text)
    return resp


def make_session(routes: Optional[Dict[str, Any]] = None, default=(200, {"success": True, "data": []})):
    """
    A ClientSession stand-in. routes maps a path to (status, body) or to an
    exception instance raised when that path is requested.
    """
    routes = routes or {}
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()

    def request(method, url, **kwargs):
        path = url.replace("http://ctfd.test", "", 1)
        outcome = routes.get(path, default)
        if isinstance(outcome, BaseException):
            raise outcome
        cm = AsyncMock()
        cm.__aenter__.return_value = make_response(*outcome)
        cm.__aexit__.return_value = False
        return cm

    session.request = MagicMock(side_effect=request)
    return session


def make_flow(config: LoadTestConfig, session, metrics=None, seed=7) -> ApiUserFlow:
    flow = ApiUserFlow(config, metrics=metrics, rng=random.Random(seed))
    flow.open_session = AsyncMock(return_value=session)
    return flow


def requested_paths(session):
    return [c.args[1].replace("http://ctfd.test", "", 1) for c in session.request.call_args_list]


# --- Sampling ---

def test_sample_returns_distinct_members():
    population = list(range(10))
    for seed in range(50):
        picked = sample_without_replacement(population, 3, random.Random(seed))
        assert len(picked) == 3
        assert len(set(picked)) == 3
        assert set(picked) <= set(population)


def test_sample_is_uniform_over_elements():
    rng = random.Random(1234)
    population = list(range(10))
    trials = 10000
    counts = Counter()
    for _ in range(trials):
        counts.update(sample_without_replacement(population, 3, rng))
    for element in population:
        assert 0.27 <= counts[element] / trials <= 0.33


def test_sample_k_larger_than_population_returns_all():
    population = ["a", "b"]
    picked = sample_without_replacement(population, 3, random.Random(0))
    assert sorted(picked) == ["a", "b"]


def test_sample_k_zero_and_empty_population():
    assert sample_without_replacement([1, 2, 3], 0) == []
    assert sample_without_replacement([], 3) == []


def test_sample_negative_k_rejected():
    with pytest.raises(ValueError):
        sample_without_replacement([1, 2, 3], -1)


def test_sample_leaves_input_untouched():
    population = [1, 2, 3, 4, 5]
    sample_without_replacement(population, 5, random.Random(3))
    assert population == [1, 2, 3, 4, 5]


# --- Request context ---

def test_base_headers_carry_token():
    headers = ApiUserFlow(make_config(api_token="secret")).base_headers()
    assert headers["Authorization"] == "Token secret"
    assert headers["Accept"] == "application/json"


def test_build_url_joins_paths():
    flow = ApiUserFlow(make_config(base_url="http://ctfd.test/"))
    assert flow.build_url("/api/v1/users") == "http://ctfd.test/api/v1/users"
    assert flow.build_url("api/v1/users") == "http://ctfd.test/api/v1/users"


def test_is_expected_status_default_and_override():
    flow = ApiUserFlow(make_config(expected_statuses={"/api/v1/notifications": [200, 304]}))
    assert flow.is_expected_status("/api/v1/users", 204) is True
    assert flow.is_expected_status("/api/v1/users", 304) is False
    assert flow.is_expected_status("/api/v1/notifications", 304) is True
    assert flow.is_expected_status("/api/v1/notifications", 201) is False


# --- Flow execution ---

@pytest.mark.asyncio
async def test_execute_full_sequence_success():
    session = make_session({"/api/v1/challenges": (200, LISTING)})
    metrics = Metrics()
    flow = make_flow(make_config(), session, metrics=metrics)

    result = await flow.execute(1)

    assert result.success is True
    assert result.error is None
    assert len(result.call_metrics) == 7
    paths = requested_paths(session)
    assert paths[0] == "/api/v1/challenges"
    detail_paths = paths[1:4]
    assert len(set(detail_paths)) == 3
    assert all(p.startswith("/api/v1/challenges/") for p in detail_paths)
    assert paths[4:] == ["/api/v1/scoreboard", "/api/v1/users", "/api/v1/notifications"]
    assert result.total_duration >= 0
    assert metrics.total_requests == 7
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_records_errors_and_continues():
    session = make_session({
        "/api/v1/challenges": (200, LISTING),
        "/api/v1/scoreboard": aiohttp.ClientConnectionError("connection refused"),
        "/api/v1/users": (500, {"success": False}),
    })
    metrics = Metrics()
    flow = make_flow(make_config(), session, metrics=metrics)

    result = await flow.execute(2)

    assert result.success is False
    assert result.error is None
    assert len(result.call_metrics) == 7
    by_endpoint = {m.endpoint: m for m in result.call_metrics}
    assert by_endpoint["/api/v1/scoreboard"].status == NETWORK_ERROR
    assert by_endpoint["/api/v1/scoreboard"].ok is False
    assert by_endpoint["/api/v1/users"].status == 500
    assert by_endpoint["/api/v1/notifications"].ok is True
    # Network failures are not counted as completed requests
    assert metrics.total_requests == 6
    assert metrics.network_errors == 1


@pytest.mark.asyncio
async def test_execute_timeout_is_network_error():
    session = make_session({
        "/api/v1/challenges": (200, LISTING),
        "/api/v1/notifications": asyncio.TimeoutError(),
    })
    result = await make_flow(make_config(), session).execute(3)
    assert result.call_metrics[-1].status == NETWORK_ERROR
    assert result.success is False


@pytest.mark.asyncio
async def test_execute_listing_failure_skips_details():
    session = make_session({"/api/v1/challenges": aiohttp.ClientConnectionError("down")})
    result = await make_flow(make_config(), session).execute(4)

    assert [m.endpoint for m in result.call_metrics] == [
        "/api/v1/challenges", "/api/v1/scoreboard", "/api/v1/users", "/api/v1/notifications",
    ]
    assert result.call_metrics[0].status == NETWORK_ERROR
    assert result.success is False


@pytest.mark.asyncio
async def test_execute_non_json_listing_body_is_tolerated():
    session = make_session({"/api/v1/challenges": (200, "<html>maintenance</html>")})
    result = await make_flow(make_config(), session).execute(5)
    assert len(result.call_metrics) == 4
    assert result.success is True


@pytest.mark.asyncio
async def test_execute_detail_calls_capped_by_listing_size():
    listing = {"data": [{"id": 1}, {"id": 2}]}
    session = make_session({"/api/v1/challenges": (200, listing)})
    result = await make_flow(make_config(detail_calls=5), session).execute(6)
    detail = [m.endpoint for m in result.call_metrics if m.endpoint.startswith("/api/v1/challenges/")]
    assert sorted(detail) == ["/api/v1/challenges/1", "/api/v1/challenges/2"]


@pytest.mark.asyncio
async def test_execute_skips_items_without_id():
    listing = {"data": [{"name": "no-id"}]}
    session = make_session({"/api/v1/challenges": (200, listing)})
    result = await make_flow(make_config(detail_calls=1), session).execute(7)
    assert len(result.call_metrics) == 4


@pytest.mark.asyncio
async def test_execute_expected_status_override_applies():
    session = make_session({
        "/api/v1/challenges": (200, LISTING),
        "/api/v1/notifications": (304, ""),
    })
    config = make_config(expected_statuses={"/api/v1/notifications": [200, 304]})
    result = await make_flow(config, session).execute(8)
    assert result.success is True
    assert result.call_metrics[-1].status == 304


@pytest.mark.asyncio
async def test_execute_detail_override_uses_template_key():
    session = make_session({"/api/v1/challenges": (200, LISTING)}, default=(404, {"success": False}))
    config = make_config(
        detail_calls=1,
        auxiliary_endpoints=[],
        expected_statuses={"/api/v1/challenges/{id}": 404},
    )
    result = await make_flow(config, session).execute(9)
    assert len(result.call_metrics) == 2
    assert result.call_metrics[1].status == 404
    assert result.call_metrics[1].ok is True
    # 404 is always an error for success accounting
    assert result.success is False


@pytest.mark.asyncio
async def test_execute_setup_failure_returns_failed_result():
    flow = ApiUserFlow(make_config(session_bundle_path="/nonexistent/auth.json"))
    result = await flow.execute(10)
    assert result.success is False
    assert result.call_metrics == ()
    assert result.error.startswith("Session setup failed:")


@pytest.mark.asyncio
async def test_execute_setup_failure_from_open_session():
    flow = ApiUserFlow(make_config())
    flow.open_session = AsyncMock(side_effect=SessionSetupError("bad bundle"))
    result = await flow.execute(11)
    assert result.error == "Session setup failed: bad bundle"


@pytest.mark.asyncio
async def test_session_closed_when_flow_is_cancelled():
    session = make_session({"/api/v1/challenges": (200, LISTING)})
    flow = make_flow(make_config(), session)
    flow._pause = AsyncMock(side_effect=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await flow.execute(12)
    session.close.assert_awaited_once()


@pytest.mark.asyncio
async def test_flow_is_callable_as_factory():
    session = make_session({"/api/v1/challenges": (200, LISTING)})
    flow = make_flow(make_config(), session)
    result = await flow(13)
    assert result.user_id == 13


@pytest.mark.asyncio
async def test_bundle_read_once_with_fresh_jar_per_session(tmp_path, monkeypatch):
    bundle_path = tmp_path / "auth.json"
    bundle_path.write_text(json.dumps({
        "cookies": [{"name": "session", "value": "abc", "domain": "ctfd.test", "path": "/"}],
        "origins": [],
    }))
    loads = []
    original_load = SessionBundle.load.__func__

    def counting_load(cls, path):
        loads.append(path)
        return original_load(cls, path)

    monkeypatch.setattr(SessionBundle, "load", classmethod(counting_load))
    flow = ApiUserFlow(make_config(session_bundle_path=str(bundle_path)))

    first = await flow.open_session()
    second = await flow.open_session()
    try:
        assert loads == [str(bundle_path)]
        assert first.cookie_jar is not second.cookie_jar
        assert len(first.cookie_jar) == len(second.cookie_jar) == 1
    finally:
        await first.close()
        await second.close()


@pytest.mark.asyncio
async def test_failed_bundle_load_is_retried_next_flow(tmp_path):
    bundle_path = tmp_path / "auth.json"
    flow = ApiUserFlow(make_config(session_bundle_path=str(bundle_path)))

    first = await flow.execute(1)
    assert first.error.startswith("Session setup failed:")

    bundle_path.write_text(json.dumps({"cookies": [], "origins": []}))
    assert flow.session_bundle().cookies == []
