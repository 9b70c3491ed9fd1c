import os
from typing import List, Optional
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from kube_ecr_refresher.config import NAMESPACE_ALL
from kube_ecr_refresher.errors import ListError
from kube_ecr_refresher.logger import get_logger

logger = get_logger(__name__)


def load_kubernetes_config(kube_config_path: Optional[str] = None) -> None:
    """Load cluster access configuration.

    An explicit path wins, then KUBECONFIG, then in-cluster service account
    credentials, then the default kubeconfig location.
    """
    kube_config_path = kube_config_path or os.getenv("KUBECONFIG")
    if kube_config_path:
        logger.info("Loading kubeconfig", path=kube_config_path)
        config.load_kube_config(config_file=kube_config_path)
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig from default location")


class KubernetesClient:
    """Thin wrapper over CoreV1Api with the calls the refresher needs"""

    def __init__(self, v1: Optional[client.CoreV1Api] = None):
        self.v1 = v1 if v1 is not None else client.CoreV1Api()

    @classmethod
    def from_config(cls, kube_config_path: Optional[str] = None) -> "KubernetesClient":
        load_kubernetes_config(kube_config_path)
        return cls()

    def list_target_namespaces(self, selector: str) -> List[str]:
        """Resolve a namespace selector into namespace names.

        The empty selector enumerates every namespace in the cluster at call
        time. Anything else is a literal comma-separated list, split verbatim.
        """
        if selector != NAMESPACE_ALL:
            return selector.split(",")
        try:
            namespaces = self.v1.list_namespace(watch=False)
        except ApiException as e:
            raise ListError(f"failed to list namespaces: {e.status} {e.reason}", cause=e)
        except Exception as e:
            raise ListError(f"failed to list namespaces: {e}", cause=e)
        return [ns.metadata.name for ns in namespaces.items]

    def create_secret(self, namespace: str, body: client.V1Secret) -> client.V1Secret:
        return self.v1.create_namespaced_secret(namespace=namespace, body=body)

    def read_secret(self, namespace: str, name: str) -> client.V1Secret:
        return self.v1.read_namespaced_secret(name=name, namespace=namespace)

    def replace_secret(self, namespace: str, body: client.V1Secret) -> client.V1Secret:
        return self.v1.replace_namespaced_secret(
            name=body.metadata.name,
            namespace=namespace,
            body=body
        )

    def test_connection(self) -> bool:
        """Test Kubernetes connection"""
        try:
            self.v1.get_api_resources()
            return True
        except Exception:
            return False
