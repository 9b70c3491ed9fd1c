import base64
import json
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from kube_ecr_refresher import metrics
from kube_ecr_refresher.errors import ListError, NotReadyError, PerNamespaceWriteError
from kube_ecr_refresher.logger import CycleLogger, get_logger

logger = get_logger(__name__)

SECRET_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_KEY = ".dockerconfigjson"
PLACEHOLDER_EMAIL = "none"

CREATED = "created"
UPDATED = "updated"
UNCHANGED = "unchanged"
FAILED = "failed"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def build_secret_data(credential) -> Dict[str, str]:
    """Encode a credential the way `kubectl create secret docker-registry` does.

    Output is deterministic for a given credential, so it can be compared
    byte for byte against what is stored in the cluster.
    """
    entry = {
        "username": credential.username,
        "password": credential.password,
        "email": PLACEHOLDER_EMAIL,
        "auth": _b64(f"{credential.username}:{credential.password}"),
    }
    docker_config = {"auths": {credential.registry_host: entry}}
    payload = json.dumps(docker_config, separators=(",", ":"))
    return {DOCKER_CONFIG_KEY: _b64(payload)}


def build_secret(namespace: str, credential) -> client.V1Secret:
    """Build the projected secret, named after the registry host"""
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(name=credential.registry_host, namespace=namespace),
        type=SECRET_TYPE,
        data=build_secret_data(credential),
    )


class SecretReconciler:
    """Creates or updates the docker-registry secret in a namespace"""

    def __init__(self, k8s_client):
        self.k8s_client = k8s_client

    def create_or_update(self, namespace: str, credential) -> str:
        secret = build_secret(namespace, credential)
        name = secret.metadata.name
        logger.debug("Attempting to create secret", namespace=namespace, secret=name)
        try:
            self.k8s_client.create_secret(namespace, secret)
        except ApiException as e:
            if e.status != 409:
                raise PerNamespaceWriteError(
                    namespace, f"failed to create secret {name!r}: {e.status} {e.reason}", cause=e)
            logger.debug("Secret already exists", namespace=namespace, secret=name)
            return self._update(namespace, secret)
        except Exception as e:
            raise PerNamespaceWriteError(namespace, f"failed to create secret {name!r}: {e}", cause=e)
        logger.info("Created secret", namespace=namespace, secret=name)
        return CREATED

    def _update(self, namespace: str, desired: client.V1Secret) -> str:
        name = desired.metadata.name
        try:
            existing = self.k8s_client.read_secret(namespace, name)
        except Exception as e:
            raise PerNamespaceWriteError(namespace, f"failed to read secret {name!r}: {e}", cause=e)

        if (existing.data or {}) == desired.data:
            logger.debug("Secret is up to date", namespace=namespace, secret=name)
            return UNCHANGED

        # Only the payload changes; resourceVersion, labels and owners are kept.
        existing.data = desired.data
        try:
            self.k8s_client.replace_secret(namespace, existing)
        except Exception as e:
            raise PerNamespaceWriteError(namespace, f"failed to update secret {name!r}: {e}", cause=e)
        logger.info("Updated secret", namespace=namespace, secret=name)
        return UPDATED


@dataclass
class CycleResult:
    """Outcome of one reconciliation cycle"""

    cycle_id: int
    outcomes: Dict[str, str] = field(default_factory=dict)
    skipped_reason: Optional[str] = None

    def count(self, outcome: str) -> int:
        return sum(1 for o in self.outcomes.values() if o == outcome)

    @property
    def failed_namespaces(self) -> List[str]:
        return [ns for ns, o in self.outcomes.items() if o == FAILED]

    @property
    def skipped(self) -> bool:
        return self.skipped_reason is not None

    def summary(self) -> Dict[str, object]:
        return {
            "namespaces": len(self.outcomes),
            CREATED: self.count(CREATED),
            UPDATED: self.count(UPDATED),
            UNCHANGED: self.count(UNCHANGED),
            FAILED: self.count(FAILED),
            "failed_namespaces": self.failed_namespaces,
        }


class CycleDriver:
    """Periodically projects the current credential into every target namespace"""

    def __init__(self, refresher, k8s_client, selector: str, interval_seconds: float,
                 max_concurrency: int = 0, pushgateway_url: Optional[str] = None,
                 pushgateway_job: str = "kube_ecr_refresher"):
        self.refresher = refresher
        self.k8s_client = k8s_client
        self.reconciler = SecretReconciler(k8s_client)
        self.selector = selector
        self.interval_seconds = interval_seconds
        self.max_concurrency = max_concurrency
        self.pushgateway_url = pushgateway_url
        self.pushgateway_job = pushgateway_job
        self.cycle_logger = CycleLogger()
        self.cycle_count = 0
        self.lock = threading.Lock()
        self.is_running = False
        self._stop = threading.Event()

    def _reconcile_namespace(self, namespace: str, credential) -> str:
        try:
            outcome = self.reconciler.create_or_update(namespace, credential)
        except PerNamespaceWriteError as e:
            logger.error(
                "Failed to create or update secret in Kubernetes namespace",
                namespace=namespace,
                error=str(e),
            )
            outcome = FAILED
        except Exception as e:
            logger.error(
                "Unexpected error reconciling Kubernetes namespace",
                namespace=namespace,
                error=str(e),
                exc_info=True,
            )
            outcome = FAILED
        metrics.SECRET_RECONCILIATIONS.labels(outcome=outcome).inc()
        return outcome

    def _fan_out(self, namespaces: List[str], credential) -> Dict[str, str]:
        # A literal selector may repeat a name; reconcile each namespace once.
        namespaces = list(dict.fromkeys(namespaces))
        if not namespaces:
            return {}
        workers = len(namespaces)
        if self.max_concurrency:
            workers = min(workers, self.max_concurrency)
        # Leaving the with-block joins every task; no task cancels another.
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = {
                ns: pool.submit(self._reconcile_namespace, ns, credential)
                for ns in namespaces
            }
        return {ns: future.result() for ns, future in futures.items()}

    def run_cycle(self, selector: Optional[str] = None) -> Optional[CycleResult]:
        """Run one reconciliation cycle, or return None if one is already running"""
        with self.lock:
            if self.is_running:
                logger.info("Previous cycle still in progress, skipping...")
                return None
            self.is_running = True
            self.cycle_count += 1
            result = CycleResult(cycle_id=self.cycle_count)

        if selector is None:
            selector = self.selector
        start_time = time.monotonic()
        try:
            self.cycle_logger.log_cycle_start(result.cycle_id, selector)
            try:
                credential = self.refresher.get()
            except NotReadyError as e:
                result.skipped_reason = str(e)
                self.cycle_logger.log_cycle_skipped(result.cycle_id, result.skipped_reason)
                metrics.CYCLES.labels(result="not_ready").inc()
                return result

            try:
                namespaces = self.k8s_client.list_target_namespaces(selector)
            except ListError as e:
                result.skipped_reason = str(e)
                logger.error("Failed to list Kubernetes namespaces", error=str(e))
                metrics.CYCLES.labels(result="list_failed").inc()
                return result

            result.outcomes = self._fan_out(namespaces, credential)
            metrics.CYCLES.labels(result="failed" if result.failed_namespaces else "success").inc()
            return result
        finally:
            duration = time.monotonic() - start_time
            metrics.CYCLE_DURATION.observe(duration)
            if not result.skipped:
                self.cycle_logger.log_cycle_end(result.cycle_id, result.summary(), duration)
            self.push_metrics()
            with self.lock:
                self.is_running = False

    def push_metrics(self) -> None:
        if self.pushgateway_url:
            metrics.push(self.pushgateway_url, self.pushgateway_job)

    def run_forever(self) -> None:
        """Run a cycle now and then on every interval tick until stop() is called"""
        started = time.monotonic()
        ticks = 0
        while not self._stop.is_set():
            self.run_cycle()
            # Ticks that elapsed while the cycle ran are dropped, not queued.
            elapsed = time.monotonic() - started
            ticks = max(ticks + 1, int(elapsed // self.interval_seconds) + 1)
            delay = started + ticks * self.interval_seconds - time.monotonic()
            if self._stop.wait(max(delay, 0)):
                break
        logger.info("Cycle driver stopped")

    def stop(self) -> None:
        self._stop.set()
