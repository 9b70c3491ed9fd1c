#!/usr/bin/env python3
"""
Kube ECR Refresher - Main Application
"""

import argparse
import signal
import sys
from datetime import timedelta

from kube_ecr_refresher import metrics
from kube_ecr_refresher.config import Config, parse_duration
from kube_ecr_refresher.errors import ConfigError, SourceError
from kube_ecr_refresher.kubernetes_client import KubernetesClient
from kube_ecr_refresher.logger import CycleLogger, get_logger, setup_logging
from kube_ecr_refresher.reconciler import CycleDriver
from kube_ecr_refresher.refresher import CredentialRefresher, create_ecr_client

FIRST_REFRESH_TIMEOUT_SECONDS = 30


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kube-ecr-refresher",
        description="Keep Amazon ECR image pull secrets fresh across Kubernetes namespaces",
    )
    parser.add_argument("--log-level", help="the log level to use")
    parser.add_argument("--log-format", choices=["json", "console"], help="the log output format")
    parser.add_argument("--path-to-kubeconfig", dest="kube_config_path",
                        help="the path to the kubeconfig file to use")
    parser.add_argument("--refresh-interval", type=parse_duration,
                        help="the interval at which to refresh the secrets (e.g. 12h)")
    parser.add_argument("--target-namespaces",
                        help="the comma-separated list of namespaces in which to create the secrets")
    parser.add_argument("--max-concurrency", type=int,
                        help="cap on namespaces reconciled in parallel (0 for no cap)")
    parser.add_argument("--aws-region", help="the AWS region of the registry")
    parser.add_argument("--registry-id", help="the AWS account id of the registry")
    parser.add_argument("--metrics-port", type=int, help="port to serve Prometheus metrics on")
    parser.add_argument("--once", dest="run_once", action="store_true", default=None,
                        help="refresh and reconcile a single time, then exit")
    return parser


def load_config(argv=None) -> Config:
    """Defaults, then environment (and .env), then command-line flags"""
    args = build_parser().parse_args(argv)
    cfg = Config()
    overrides = {
        "log_level": args.log_level,
        "log_format": args.log_format,
        "kube_config_path": args.kube_config_path,
        "refresh_interval_seconds": args.refresh_interval,
        "target_namespaces": args.target_namespaces,
        "max_concurrency": args.max_concurrency,
        "aws_region": args.aws_region,
        "registry_id": args.registry_id,
        "metrics_port": args.metrics_port,
        "run_once": args.run_once,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(cfg, name, value)
    cfg.validate()
    return cfg


def run_once(refresher: CredentialRefresher, driver: CycleDriver, logger) -> int:
    try:
        credential = refresher.refresh_once()
    except Exception as e:
        logger.error(
            "Failed to get Amazon ECR authentication data",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=not isinstance(e, SourceError),
        )
        metrics.record_refresh_failure()
        driver.push_metrics()
        return 1
    refresher.slot.replace(credential)
    metrics.record_refresh_success(credential.valid_until)
    result = driver.run_cycle()
    if result is None or result.skipped or result.failed_namespaces:
        return 1
    return 0


def main(argv=None) -> int:
    """Main application entry point"""
    try:
        cfg = load_config(argv)
        setup_logging(cfg.log_level, cfg.log_format)
    except (ConfigError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    logger = get_logger("main")
    cycle_logger = CycleLogger()
    cycle_logger.log_startup(cfg.as_dict())

    try:
        k8s_client = KubernetesClient.from_config(cfg.kube_config_path)
        ecr_client = create_ecr_client(cfg.aws_region)
    except Exception as e:
        cycle_logger.log_error(e, context="startup")
        return 1

    if not k8s_client.test_connection():
        logger.warning("Kubernetes connection test failed, continuing anyway")

    refresher = CredentialRefresher(
        ecr_client,
        registry_id=cfg.registry_id,
        safety_margin=timedelta(seconds=cfg.refresh_safety_margin_seconds),
        backoff=timedelta(seconds=cfg.refresh_backoff_seconds),
    )
    driver = CycleDriver(
        refresher,
        k8s_client,
        selector=cfg.target_namespaces,
        interval_seconds=cfg.refresh_interval_seconds,
        max_concurrency=cfg.max_concurrency,
        pushgateway_url=cfg.pushgateway_url,
        pushgateway_job=cfg.pushgateway_job,
    )

    if cfg.run_once:
        logger.info("Running in single execution mode")
        return run_once(refresher, driver, logger)

    if cfg.metrics_port:
        metrics.serve(cfg.metrics_port)

    def handle_signal(signum, _frame):
        logger.info("Received signal, shutting down...", signal=signal.Signals(signum).name)
        driver.stop()
        refresher.stop(timeout=0)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    refresher.start()
    # Give the first cycle a chance to use a credential instead of waiting a full interval.
    if not refresher.wait_first_attempt(timeout=FIRST_REFRESH_TIMEOUT_SECONDS):
        logger.warning("No Amazon ECR credential yet, the first cycle will be skipped")
    logger.info("Starting main loop", interval_seconds=cfg.refresh_interval_seconds)
    driver.run_forever()
    refresher.stop(timeout=5)
    return 0


if __name__ == "__main__":
    sys.exit(main())
