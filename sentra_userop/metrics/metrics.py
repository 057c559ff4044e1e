import logging

from prometheus_client import Counter, Summary, start_http_server

REQUEST_TIME = Summary(
    "sentra_request_processing_seconds",
    "Time spent waiting for a remote json-rpc method",
    ["method"],
)
SIMULATION_OUTCOMES = Counter(
    "sentra_simulation_outcomes",
    "Simulation results by extracted AA code",
    ["code"],
)
PIPELINE_FAILURES = Counter(
    "sentra_pipeline_failures",
    "Failed user operation pipeline runs by stage",
    ["stage"],
)


def record_simulation_outcome(code: str | None) -> None:
    SIMULATION_OUTCOMES.labels(code if code is not None else "none").inc()


def record_pipeline_failure(stage: str) -> None:
    PIPELINE_FAILURES.labels(stage).inc()


def run_metrics_server(host="localhost", port=8000):
    """
    run prometheus metrics server
    """
    logging.info(f"Starting Metrics Http Server at: {host}:{port}")
    start_http_server(port, addr=host)
