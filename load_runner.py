import argparse
import asyncio
import logging
import sys
import time
from typing import Optional

from admission_controller import AdmissionController, RunState
from live_metrics import Metrics
from load_config import ConfigurationError, LoadTestConfig, configure_logging, load_config
from results_report import LoadTestSummary, render_summary, summarize_results
from user_flow import ApiUserFlow

logger = logging.getLogger("LoadRunner")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run a duration-bounded API load test. Unset options fall back to the environment."
    )
    parser.add_argument("--base-url", dest="base_url", help="Target base URL (CTFD_BASE_URL)")
    parser.add_argument("--token", dest="api_token", help="API access token (CTFD_API_ACCESS_TOKEN)")
    parser.add_argument("--session-bundle", dest="session_bundle_path", help="Path to the captured session bundle")
    parser.add_argument("--duration", dest="duration_seconds", type=float, help="Run duration in seconds")
    parser.add_argument("--concurrency", dest="target_concurrency", type=int, help="Number of concurrent flows")
    parser.add_argument("--pacing-ms", dest="pacing_ms", type=int, help="Think time between API calls (ms)")
    parser.add_argument("--detail-calls", dest="detail_calls", type=int, help="Detail calls per flow")
    parser.add_argument("--timeout-ms", dest="request_timeout_ms", type=int, help="Per-call timeout (ms)")
    parser.add_argument(
        "--verify-tls",
        dest="verify_tls",
        action="store_true",
        default=None,
        help="Validate TLS certificates (ignored by default)",
    )
    parser.add_argument("--profile", dest="profile", help="YAML run profile with default settings")
    parser.add_argument("--debug", dest="debug", action="store_true", default=None, help="Enable debug logging")
    return parser.parse_args(argv)


async def execute_load_test(
    config: LoadTestConfig,
    metrics: Optional[Metrics] = None,
    controller: Optional[AdmissionController] = None,
) -> LoadTestSummary:
    """Runs one load test to completion and reduces its results."""
    metrics = metrics or Metrics()
    controller = controller or AdmissionController(
        RunState(),
        metrics,
        relaunch_delay=config.relaunch_delay_s,
        drain_log_interval=config.drain_log_interval_s,
        progress_interval=config.progress_interval_s,
        debug=config.debug,
    )
    flow = ApiUserFlow(config, metrics)

    started = time.monotonic()
    results = await controller.run(config.duration_seconds, config.target_concurrency, flow.execute)
    run_duration_s = time.monotonic() - started
    return summarize_results(results, run_duration_s=run_duration_s)


def main(argv=None) -> int:
    args = parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k != "profile" and v is not None}

    try:
        config = load_config(overrides, profile_path=args.profile)
    except ConfigurationError as e:
        logger.critical(f"{e}")
        return 2
    configure_logging(config.debug)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        summary = loop.run_until_complete(execute_load_test(config))
    except KeyboardInterrupt:
        print("Load test interrupted before completion; no report produced.")
        return 130
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()

    print(render_summary(summary))
    return 0


if __name__ == "__main__":
    sys.exit(main())
