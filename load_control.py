import asyncio
import logging
import os
import signal
import threading
import time
from datetime import UTC, datetime
from typing import Any, Dict, Optional

import psutil
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response

from admission_controller import AdmissionController, RunState
from live_metrics import Metrics, MetricsSnapshot
from load_config import ConfigurationError, LoadTestConfig, configure_logging, load_config
from load_runner import execute_load_test
from results_report import LoadTestSummary, render_summary

# ------------------------------------------------------
# Logging in UTC
# ------------------------------------------------------
logging.Formatter.converter = time.gmtime

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)sZ - %(levelname)s - %(name)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger("load_control")

app = FastAPI()

# ------------------------------------------------------
# Global Runtime State
# ------------------------------------------------------
current_settings = {
    'app_status': 'initializing',  # 'initializing' | 'running' | 'completed' | 'error'
}

controller_instance = None  # type: Optional[AdmissionController]
metrics_instance = None     # type: Optional[Metrics]
event_loop = None           # type: Optional[asyncio.AbstractEventLoop]
background_thread = None    # type: Optional[threading.Thread]
last_summary = None         # type: Optional[LoadTestSummary]


def _current_status() -> str:
    status = current_settings['app_status']
    controller = controller_instance
    if status == 'running' and controller is not None and controller.draining:
        return 'draining'
    return status


# ---------------------------------------------------------------------
# BACKGROUND THREAD ROUTINE
# ---------------------------------------------------------------------
def run_load_test_in_loop(config: LoadTestConfig, controller: AdmissionController, metrics: Metrics):
    """
    Dedicated background thread: creates an asyncio loop and runs one load
    test until the deadline has passed and every flow has drained.
    """
    global event_loop, last_summary

    try:
        event_loop = asyncio.new_event_loop()
        asyncio.set_event_loop(event_loop)
        summary = event_loop.run_until_complete(execute_load_test(config, metrics, controller))
        last_summary = summary
        current_settings['app_status'] = 'completed'
        logger.info(render_summary(summary))
    except Exception as e:
        logger.error(f"Background load test error: {e}", exc_info=True)
        current_settings['app_status'] = 'error'
    finally:
        logger.info("Background load test thread exiting.")
        if event_loop and not event_loop.is_closed():
            event_loop.run_until_complete(event_loop.shutdown_asyncgens())
            event_loop.close()
            logger.debug("Asyncio event loop closed.")


def _run_in_loop(coro_factory, default, timeout: float = 0.5):
    """Evaluates a metrics coroutine on the run's event loop from the API thread."""
    loop = event_loop
    if loop is None or loop.is_closed() or not loop.is_running():
        return default
    future = asyncio.run_coroutine_threadsafe(coro_factory(), loop)
    try:
        return future.result(timeout=timeout)
    except Exception as e:
        logger.warning(f"Error collecting metrics from the run loop: {e}")
        return default


def _collect_run_metrics() -> Dict[str, Any]:
    controller = controller_instance
    metrics = metrics_instance
    run_metrics = {
        "rps": 0.0,
        "active_flows": 0,
        "peak_active_flows": 0,
        "launched_flows": 0,
        "completed_flows": 0,
        "total_requests": 0,
        "network_errors": 0,
        "successful_flows": 0,
        "average_flow_duration_ms": 0.0,
    }
    if controller is not None:
        state = controller.state
        run_metrics.update({
            "active_flows": controller.get_active_user_count(),
            "peak_active_flows": state.peak_active,
            "launched_flows": state.launched,
            "completed_flows": state.completed_count,
        })
    if metrics is not None:
        if controller is not None and controller.running:
            snapshot = _run_in_loop(metrics.snapshot, MetricsSnapshot())
        else:
            snapshot = metrics.peek()
        run_metrics.update(snapshot.model_dump())
    return run_metrics


# ---------------------------------------------------------------------
# FASTAPI ENDPOINTS
# ---------------------------------------------------------------------
@app.get('/api/health')
async def health_check():
    """Basic health check endpoint."""
    return JSONResponse({
        "status": "healthy",
        "app_status": _current_status()
    })


@app.post('/api/start')
async def start_load_test(data: Dict[str, Any]):
    """
    Start a duration-bounded load test. The body holds configuration overrides
    merged over the environment. Only one run may be active at a time.
    """
    global background_thread, controller_instance, metrics_instance, last_summary

    if current_settings['app_status'] == 'running':
        raise HTTPException(status_code=409, detail="A load test is already running.")

    try:
        config = load_config(overrides=data)
    except ConfigurationError as ce:
        logger.error(f"Start request rejected: {ce}")
        raise HTTPException(status_code=400, detail=str(ce))
    configure_logging(config.debug)

    metrics_instance = Metrics()
    controller_instance = AdmissionController(
        RunState(),
        metrics_instance,
        relaunch_delay=config.relaunch_delay_s,
        drain_log_interval=config.drain_log_interval_s,
        progress_interval=config.progress_interval_s,
        debug=config.debug,
    )
    last_summary = None
    current_settings['app_status'] = 'running'
    background_thread = threading.Thread(
        target=run_load_test_in_loop,
        args=(config, controller_instance, metrics_instance),
        daemon=True
    )
    background_thread.start()

    logger.info(f"Load test started: {config.duration_seconds}s at {config.target_concurrency} concurrent flows")
    return JSONResponse({
        "message": "Load test started",
        "duration_seconds": config.duration_seconds,
        "target_concurrency": config.target_concurrency,
    })


@app.post('/api/stop')
async def stop_load_test():
    """Closes admission for the active run. In-flight flows drain before the report is produced."""
    if current_settings['app_status'] != 'running' or controller_instance is None:
        return JSONResponse({"message": f"No running load test to stop (status={_current_status()})."})
    controller_instance.request_stop()
    return JSONResponse({"message": "Admission closed; in-flight flows are draining."})


@app.get('/api/report')
async def load_test_report():
    """Structured summary of the last completed run."""
    summary = last_summary
    if summary is None:
        raise HTTPException(status_code=404, detail=f"No report available (status={_current_status()}).")
    return JSONResponse({
        "summary": summary.model_dump(mode="json"),
        "text": render_summary(summary),
    })


@app.get('/api/metrics')
async def api_metrics():
    """Return host stats and live load test metrics under the 'metrics' key."""
    cpu_percent = psutil.cpu_percent(interval=0.1)
    mem = psutil.virtual_memory()
    net_io = psutil.net_io_counters()

    return JSONResponse({
        "timestamp": datetime.now(tz=UTC).isoformat().replace("+00:00", "Z"),
        "app_status": _current_status(),
        "network": {
            "bytes_sent": net_io.bytes_sent,
            "bytes_recv": net_io.bytes_recv,
            "packets_sent": net_io.packets_sent,
            "packets_recv": net_io.packets_recv
        },
        "system": {
            "cpu_percent": round(cpu_percent, 1),
            "memory_percent": round(mem.percent, 1),
            "memory_available_mb": round(mem.available / (1024 * 1024), 2),
            "memory_used_mb": round(mem.used / (1024 * 1024), 2)
        },
        "metrics": _collect_run_metrics(),
    })


@app.get('/metrics')
async def metrics_prometheus():
    """Prometheus /metrics endpoint with host and load test stats."""
    cpu_percent = psutil.cpu_percent(interval=0.1)
    mem = psutil.virtual_memory()
    run_metrics = _collect_run_metrics()

    status_map = {
        "initializing": 0,
        "running": 1,
        "draining": 2,
        "completed": 3,
        "error": 4
    }
    app_status_val = status_map.get(_current_status(), 4)

    lines = [
        "# HELP loadrunner_cpu_percent CPU usage percent.",
        "# TYPE loadrunner_cpu_percent gauge",
        f"loadrunner_cpu_percent {round(cpu_percent, 1)}",
        "# HELP loadrunner_memory_percent Memory usage percent.",
        "# TYPE loadrunner_memory_percent gauge",
        f"loadrunner_memory_percent {round(mem.percent, 1)}",
        "# HELP loadrunner_rps Current requests-per-second generated by flows.",
        "# TYPE loadrunner_rps gauge",
        f"loadrunner_rps {float(run_metrics['rps'])}",
        "# HELP loadrunner_active_flows Flows currently in flight.",
        "# TYPE loadrunner_active_flows gauge",
        f"loadrunner_active_flows {run_metrics['active_flows']}",
        "# HELP loadrunner_peak_active_flows Highest number of flows in flight during the run.",
        "# TYPE loadrunner_peak_active_flows gauge",
        f"loadrunner_peak_active_flows {run_metrics['peak_active_flows']}",
        "# HELP loadrunner_flows_completed_total Flows completed in the current run.",
        "# TYPE loadrunner_flows_completed_total counter",
        f"loadrunner_flows_completed_total {run_metrics['completed_flows']}",
        "# HELP loadrunner_requests_total API calls that received a response.",
        "# TYPE loadrunner_requests_total counter",
        f"loadrunner_requests_total {run_metrics['total_requests']}",
        "# HELP loadrunner_network_errors_total API calls that got no HTTP response.",
        "# TYPE loadrunner_network_errors_total counter",
        f"loadrunner_network_errors_total {run_metrics['network_errors']}",
        "# HELP loadrunner_average_flow_duration_ms Average successful flow duration in milliseconds.",
        "# TYPE loadrunner_average_flow_duration_ms gauge",
        f"loadrunner_average_flow_duration_ms {run_metrics['average_flow_duration_ms']}",
        "# HELP app_status Application status (initializing=0, running=1, draining=2, completed=3, error=4).",
        "# TYPE app_status gauge",
        f"app_status {app_status_val}",
    ]
    return Response("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")


# ---------------------------------------------------------------------
# SIGNAL HANDLER (SIGTERM, SIGINT)
# ---------------------------------------------------------------------
def handle_signal(signum, frame):
    """Close admission on SIGTERM/SIGINT and exit immediately."""
    signal_name = signal.Signals(signum).name
    logger.info(f"Received signal {signal_name} ({signum}); closing admission and exiting.")
    if controller_instance is not None:
        controller_instance.request_stop()
    os._exit(0)


# ---------------------------------------------------------------------
# MAIN ENTRY POINT
# ---------------------------------------------------------------------
if __name__ == '__main__':
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)
    logger.info("Starting load_control API server...")

    import uvicorn
    uvicorn.run(
        "load_control:app",
        host=os.environ.get("LOAD_CONTROL_HOST", "0.0.0.0"),
        port=int(os.environ.get("LOAD_CONTROL_PORT", "8080")),
        log_level="info",
    )
