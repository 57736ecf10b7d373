# flow_models.py

import time
from typing import Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    model_validator,
)

# Status recorded for calls that never produced an HTTP response (timeout, connection error)
NETWORK_ERROR = "NETWORK_ERROR"

CallStatus = Union[int, Literal["NETWORK_ERROR"]]


def now_ms() -> float:
    """Wall clock in epoch milliseconds."""
    return time.time() * 1000.0


class CallMetric(BaseModel):
    """Timing and outcome of a single API call within a flow."""
    model_config = ConfigDict(frozen=True)

    endpoint: str = Field(..., description="Endpoint path as requested, e.g. /api/v1/challenges/7")
    method: str = Field(..., description="HTTP method")
    duration_ms: float = Field(..., ge=0, description="Wall-clock duration of the call in milliseconds")
    status: CallStatus = Field(..., description="HTTP status code or NETWORK_ERROR")
    ok: bool = Field(..., description="True if the call returned an expected status")

    @computed_field
    @property
    def is_error(self) -> bool:
        if self.status == NETWORK_ERROR:
            return True
        return (not self.ok) or self.status >= 400

    def describe(self) -> str:
        return f"{self.method} {self.endpoint} Status: {self.status} Duration: {self.duration_ms:.0f}ms"


class FlowResult(BaseModel):
    """
    Outcome of one simulated user flow. Created once when the flow completes and
    never mutated afterwards. Times are epoch milliseconds.
    """
    model_config = ConfigDict(frozen=True)

    user_id: int
    success: bool
    start_time: float
    end_time: float
    call_metrics: Tuple[CallMetric, ...] = Field(default_factory=tuple)
    error: Optional[str] = None

    @computed_field
    @property
    def total_duration(self) -> float:
        return self.end_time - self.start_time

    @model_validator(mode='after')
    def check_consistency(self) -> 'FlowResult':
        if self.end_time < self.start_time:
            raise ValueError(f"FlowResult for user {self.user_id}: end_time precedes start_time")
        has_errors = any(m.is_error for m in self.call_metrics)
        if self.error is not None:
            if self.success:
                raise ValueError(f"FlowResult for user {self.user_id}: a flow with an error cannot be successful")
        elif self.success == has_errors:
            raise ValueError(
                f"FlowResult for user {self.user_id}: success={self.success} disagrees with recorded call errors"
            )
        return self

    @property
    def failed_calls(self) -> Tuple[CallMetric, ...]:
        return tuple(m for m in self.call_metrics if m.is_error)

    @property
    def successful_call_count(self) -> int:
        return sum(1 for m in self.call_metrics if not m.is_error)

    @classmethod
    def from_calls(cls, user_id: int, start_time: float, end_time: float, call_metrics) -> 'FlowResult':
        metrics = tuple(call_metrics)
        return cls(
            user_id=user_id,
            success=not any(m.is_error for m in metrics),
            start_time=start_time,
            end_time=end_time,
            call_metrics=metrics,
        )

    @classmethod
    def failed(
        cls,
        user_id: int,
        error: str,
        start_time: Optional[float] = None,
        end_time: Optional[float] = None,
        call_metrics=(),
    ) -> 'FlowResult':
        """Failed flow, used for setup failures and faults caught at the controller boundary."""
        end = now_ms() if end_time is None else end_time
        start = end if start_time is None else min(start_time, end)
        return cls(
            user_id=user_id,
            success=False,
            start_time=start,
            end_time=end,
            call_metrics=tuple(call_metrics),
            error=error or "Unknown flow error",
        )
