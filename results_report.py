# results_report.py
"""Reduction of collected FlowResults into counts, means and percentiles, and the text report."""

import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from flow_models import FlowResult

REPORTED_PERCENTILES: Tuple[int, ...] = (90, 95, 99)


def percentile(durations: Sequence[float], p: float) -> float:
    """
    Linear-interpolation percentile at fractional rank p/100 * (n-1) of the
    ascending samples. Returns 0 for an empty sequence.
    """
    if not 0 <= p <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {p}")
    if not durations:
        return 0
    ordered = sorted(durations)
    rank = p / 100 * (len(ordered) - 1)
    lower_index = math.floor(rank)
    upper_index = math.ceil(rank)
    if lower_index == upper_index:
        return ordered[lower_index]
    lower = ordered[lower_index]
    upper = ordered[upper_index]
    return lower + (upper - lower) * (rank - lower_index)


def _mean(values: Sequence[float]) -> Optional[float]:
    if not values:
        return None
    return sum(values) / len(values)


class LoadTestSummary(BaseModel):
    """Structured result of a load test run. Rates that cannot be computed are None."""
    model_config = ConfigDict(frozen=True)

    attempted: int
    succeeded: int
    failed: int
    avg_flow_duration_ms: Optional[float] = None
    avg_call_duration_ms: Optional[float] = None
    call_durations_sample_size: int = 0
    percentiles_ms: Dict[int, float] = Field(default_factory=dict)
    total_calls: int = 0
    successful_calls: int = 0
    error_calls: int = 0
    call_success_rate: Optional[float] = Field(default=None, description="Percentage of successful calls across all flows")
    failed_flows: Tuple[FlowResult, ...] = Field(default_factory=tuple)
    run_duration_s: Optional[float] = None


def summarize_results(results: Iterable[FlowResult], run_duration_s: Optional[float] = None) -> LoadTestSummary:
    """Reduces FlowResults into a LoadTestSummary. Empty input yields zeros and None rates."""
    results = list(results)
    successful_flows = [r for r in results if r.success]
    failed_flows = [r for r in results if not r.success]

    # Individual call durations from successful flows only
    call_durations: List[float] = [m.duration_ms for r in successful_flows for m in r.call_metrics]

    total_calls = sum(len(r.call_metrics) for r in results)
    successful_calls = sum(r.successful_call_count for r in results)

    return LoadTestSummary(
        attempted=len(results),
        succeeded=len(successful_flows),
        failed=len(failed_flows),
        avg_flow_duration_ms=_mean([r.total_duration for r in successful_flows]),
        avg_call_duration_ms=_mean(call_durations),
        call_durations_sample_size=len(call_durations),
        percentiles_ms={p: percentile(call_durations, p) for p in REPORTED_PERCENTILES},
        total_calls=total_calls,
        successful_calls=successful_calls,
        error_calls=total_calls - successful_calls,
        call_success_rate=(successful_calls / total_calls * 100.0) if total_calls else None,
        failed_flows=tuple(failed_flows),
        run_duration_s=run_duration_s,
    )


def _fmt(value: Optional[float], suffix: str = "") -> str:
    if value is None:
        return "N/A"
    return f"{value:.2f}{suffix}"


def render_summary(summary: LoadTestSummary) -> str:
    """Human-readable report, one line per failed call within failed flows."""
    lines = ["", "--- API Load Test Summary ---"]
    if summary.run_duration_s is not None:
        lines.append(f"Load test completed in {summary.run_duration_s:.2f} seconds.")
    lines.append(f"Total API Flows Attempted: {summary.attempted}")
    lines.append(f"Successful API Flows: {summary.succeeded}")
    lines.append(f"Failed API Flows: {summary.failed}")

    lines.append("")
    lines.append("Average Metrics for Successful API Flows:")
    lines.append(f"  Average Full API Flow Duration Per User: {_fmt(summary.avg_flow_duration_ms, 'ms')}")
    lines.append(f"  Average Individual API Call Time: {_fmt(summary.avg_call_duration_ms, 'ms')}")

    lines.append("")
    lines.append(f"Percentiles for Individual API Call Durations (ms, n={summary.call_durations_sample_size}):")
    for p in REPORTED_PERCENTILES:
        value = summary.percentiles_ms.get(p, 0.0) if summary.call_durations_sample_size else None
        lines.append(f"  P{p}: {_fmt(value)}")

    lines.append("")
    lines.append("Overall API Call Summary:")
    lines.append(f"  Total Successful API Calls: {summary.successful_calls}")
    lines.append(f"  Total API Calls Attempted: {summary.total_calls}")
    lines.append(f"  Total API Calls with Errors (HTTP 4xx/5xx, unexpected status or Network): {summary.error_calls}")
    lines.append(f"  Overall API Call Success Rate: {_fmt(summary.call_success_rate, '%')}")

    if summary.failed_flows:
        lines.append("")
        lines.append("Details for Failed API Flows:")
        for flow in summary.failed_flows:
            lines.append(f"  User {flow.user_id}: Failed due to: {flow.error or 'Internal API errors'}")
            failed_calls = flow.failed_calls
            if failed_calls:
                lines.append("    API Errors within flow:")
                for detail in failed_calls:
                    lines.append(f"      - {detail.describe()}")

    lines.append("--- End of Summary ---")
    return "\n".join(lines)
