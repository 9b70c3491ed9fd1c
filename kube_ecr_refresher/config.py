"""
Configuration management for Kube ECR Refresher
"""

import math
import os
import re
from typing import Optional
from dataclasses import dataclass
from dotenv import load_dotenv

from kube_ecr_refresher.errors import ConfigError

# Load environment variables
load_dotenv()

# Kubernetes uses the empty string to mean "every namespace".
NAMESPACE_ALL = ""

# Amazon ECR authorization tokens are valid for 12 hours.
TOKEN_LIFETIME_SECONDS = 12 * 3600

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS_MS = {"ms": 1, "s": 1000, "m": 60000, "h": 3600000}


def parse_duration(value) -> float:
    """Parse '12h', '1h30m', '90s' or a bare number of seconds into seconds."""
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            raise ConfigError("empty duration")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            millis = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                millis += float(match.group(1)) * _DURATION_UNITS_MS[match.group(2)]
                pos = match.end()
            if pos != len(text):
                raise ConfigError(f"invalid duration {value!r}")
            seconds = millis / 1000
    if not math.isfinite(seconds) or seconds <= 0:
        raise ConfigError(f"duration must be positive (got {value!r})")
    return seconds


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got {raw!r})")


@dataclass
class Config:
    """Configuration class for Kube ECR Refresher"""

    # Kubernetes configuration
    kube_config_path: Optional[str] = None

    # Namespace selector, "" for all namespaces or a comma-separated list
    target_namespaces: str = NAMESPACE_ALL

    # Scheduling configuration
    refresh_interval_seconds: float = 12 * 3600
    refresh_safety_margin_seconds: float = 60
    refresh_backoff_seconds: float = 60

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"

    # Execution control
    max_concurrency: int = 0
    run_once: bool = False

    # Amazon ECR configuration
    aws_region: Optional[str] = None
    registry_id: Optional[str] = None

    # Metrics configuration
    metrics_port: int = 0
    pushgateway_url: Optional[str] = None
    pushgateway_job: str = "kube_ecr_refresher"

    def __post_init__(self):
        """Override defaults with environment variables if present"""
        self.kube_config_path = os.getenv("KUBE_CONFIG_PATH", self.kube_config_path)
        self.target_namespaces = os.getenv("TARGET_NAMESPACES", self.target_namespaces)
        self.refresh_interval_seconds = parse_duration(
            os.getenv("REFRESH_INTERVAL", self.refresh_interval_seconds))
        self.refresh_safety_margin_seconds = parse_duration(
            os.getenv("REFRESH_SAFETY_MARGIN", self.refresh_safety_margin_seconds))
        self.refresh_backoff_seconds = parse_duration(
            os.getenv("REFRESH_BACKOFF", self.refresh_backoff_seconds))
        self.log_level = os.getenv("LOG_LEVEL", self.log_level)
        self.log_format = os.getenv("LOG_FORMAT", self.log_format)
        self.max_concurrency = _env_int("MAX_CONCURRENCY", self.max_concurrency)
        self.run_once = _env_bool("RUN_ONCE", self.run_once)
        self.aws_region = os.getenv("AWS_REGION", self.aws_region)
        self.registry_id = os.getenv("ECR_REGISTRY_ID", self.registry_id)
        self.metrics_port = _env_int("METRICS_PORT", self.metrics_port)
        self.pushgateway_url = os.getenv("PROMETHEUS_PUSHGATEWAY_URL", self.pushgateway_url)
        self.pushgateway_job = os.getenv("PROMETHEUS_JOB_NAME", self.pushgateway_job)
        self.validate()

    def validate(self) -> None:
        """Reject values that would make the loops misbehave"""
        if self.max_concurrency < 0:
            raise ConfigError("max_concurrency must be >= 0")
        if self.metrics_port < 0:
            raise ConfigError("metrics_port must be >= 0")
        if self.refresh_safety_margin_seconds >= TOKEN_LIFETIME_SECONDS:
            raise ConfigError(
                f"refresh_safety_margin_seconds must be below the {TOKEN_LIFETIME_SECONDS}s "
                f"token lifetime (got {self.refresh_safety_margin_seconds})"
            )
        if self.log_format not in ("json", "console"):
            raise ConfigError(f"log_format must be 'json' or 'console' (got {self.log_format!r})")

    def as_dict(self) -> dict:
        """Loggable view of the configuration"""
        return {
            "kube_config_path": self.kube_config_path,
            "target_namespaces": self.target_namespaces or "<all>",
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "refresh_safety_margin_seconds": self.refresh_safety_margin_seconds,
            "refresh_backoff_seconds": self.refresh_backoff_seconds,
            "log_level": self.log_level,
            "max_concurrency": self.max_concurrency,
            "run_once": self.run_once,
            "aws_region": self.aws_region,
            "registry_id": self.registry_id,
            "metrics_port": self.metrics_port,
            "pushgateway_url": self.pushgateway_url,
        }
