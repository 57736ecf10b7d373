import pytest
from pydantic import ValidationError

from flow_models import NETWORK_ERROR, CallMetric, FlowResult


def make_metric(status=200, ok=True, endpoint="/api/v1/challenges", duration_ms=12.5) -> CallMetric:
    return CallMetric(endpoint=endpoint, method="GET", duration_ms=duration_ms, status=status, ok=ok)


@pytest.mark.parametrize(
    "status,ok,expected",
    [
        (200, True, False),
        (204, True, False),
        (200, False, True),
        (302, False, True),
        (304, True, False),
        (404, True, True),
        (404, False, True),
        (500, False, True),
        (NETWORK_ERROR, False, True),
    ],
)
def test_call_metric_is_error_matches_rule(status, ok, expected):
    metric = make_metric(status=status, ok=ok)
    assert metric.is_error is expected
    assert metric.is_error == ((not ok) or status == NETWORK_ERROR or (status != NETWORK_ERROR and status >= 400))


def test_call_metric_rejects_negative_duration():
    with pytest.raises(ValidationError):
        make_metric(duration_ms=-1)


def test_call_metric_is_error_serialized():
    dumped = make_metric(status=NETWORK_ERROR, ok=False).model_dump()
    assert dumped["status"] == NETWORK_ERROR
    assert dumped["is_error"] is True


def test_flow_result_total_duration_is_end_minus_start():
    result = FlowResult.from_calls(3, 1000.0, 1250.5, [make_metric()])
    assert result.total_duration == 250.5
    assert result.total_duration == result.end_time - result.start_time
    assert result.success is True


def test_flow_result_rejects_end_before_start():
    with pytest.raises(ValidationError):
        FlowResult(user_id=1, success=True, start_time=2000.0, end_time=1000.0)


def test_flow_result_success_derived_from_calls():
    calls = [make_metric(), make_metric(status=500, ok=False, endpoint="/api/v1/users")]
    result = FlowResult.from_calls(1, 0.0, 10.0, calls)
    assert result.success is False
    assert result.error is None
    assert [m.endpoint for m in result.failed_calls] == ["/api/v1/users"]
    assert result.successful_call_count == 1


def test_flow_result_inconsistent_success_rejected():
    with pytest.raises(ValidationError):
        FlowResult(user_id=1, success=True, start_time=0.0, end_time=1.0, call_metrics=(make_metric(status=503, ok=False),))
    with pytest.raises(ValidationError):
        FlowResult(user_id=1, success=False, start_time=0.0, end_time=1.0, call_metrics=(make_metric(),))


def test_flow_result_failed_has_no_calls_and_error():
    result = FlowResult.failed(9, error="Session setup failed: missing bundle")
    assert result.success is False
    assert result.call_metrics == ()
    assert result.error == "Session setup failed: missing bundle"
    assert result.total_duration == 0


def test_flow_result_failed_clamps_start_time():
    result = FlowResult.failed(2, error="boom", start_time=500.0, end_time=400.0)
    assert result.start_time == 400.0
    assert result.total_duration >= 0


def test_flow_result_is_immutable():
    result = FlowResult.from_calls(1, 0.0, 1.0, [make_metric()])
    with pytest.raises(ValidationError):
        result.success = False
