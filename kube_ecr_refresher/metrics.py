"""
Prometheus metrics for credential refreshes and secret reconciliation
"""

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    push_to_gateway,
    start_http_server,
)

from kube_ecr_refresher.logger import get_logger

logger = get_logger(__name__)

TOKEN_REFRESHES = Counter(
    "ecr_refresher_token_refreshes_total",
    "Total number of Amazon ECR token refresh attempts",
    ["result"],
)

CREDENTIAL_EXPIRY = Gauge(
    "ecr_refresher_credential_expiry_timestamp_seconds",
    "Expiry of the current Amazon ECR credential as a unix timestamp, 0 if none",
)

CREDENTIAL_READY = Gauge(
    "ecr_refresher_credential_ready",
    "Whether a valid Amazon ECR credential is currently held",
)

SECRET_RECONCILIATIONS = Counter(
    "ecr_refresher_secret_reconciliations_total",
    "Per-namespace secret reconciliation outcomes",
    ["outcome"],
)

CYCLES = Counter(
    "ecr_refresher_cycles_total",
    "Reconciliation cycles by result",
    ["result"],
)

CYCLE_DURATION = Histogram(
    "ecr_refresher_cycle_duration_seconds",
    "Wall-clock duration of reconciliation cycles",
)


def record_refresh_success(valid_until) -> None:
    TOKEN_REFRESHES.labels(result="success").inc()
    CREDENTIAL_EXPIRY.set(valid_until.timestamp())
    CREDENTIAL_READY.set(1)


def record_refresh_failure() -> None:
    TOKEN_REFRESHES.labels(result="failure").inc()
    CREDENTIAL_EXPIRY.set(0)
    CREDENTIAL_READY.set(0)


def serve(port: int) -> None:
    """Expose /metrics on the given port"""
    start_http_server(port)
    logger.info("Serving Prometheus metrics", port=port)


def push(gateway_url: str, job_name: str) -> bool:
    """Push the default registry to a Pushgateway, never raising"""
    try:
        push_to_gateway(gateway_url, job=job_name, registry=REGISTRY)
        logger.debug("Pushed metrics to Pushgateway", url=gateway_url, job=job_name)
        return True
    except Exception as e:
        # A monitoring outage must not fail reconciliation.
        logger.error("Failed to push metrics to Pushgateway", url=gateway_url, error=str(e))
        return False
