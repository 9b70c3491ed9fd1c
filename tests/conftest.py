"""Shared fixtures for Kube ECR Refresher tests"""

import base64
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from kube_ecr_refresher.kubernetes_client import KubernetesClient
from kube_ecr_refresher.refresher import Credential

NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
REGISTRY_HOST = "123.dkr.ecr.eu-west-1.amazonaws.com"


def authorization_record(token=None, endpoint="https://" + REGISTRY_HOST,
                         expires_at=NOW + timedelta(hours=12)):
    if token is None:
        token = base64.b64encode(b"AWS:secret").decode()
    return {
        "authorizationToken": token,
        "proxyEndpoint": endpoint,
        "expiresAt": expires_at,
    }


@pytest.fixture
def credential() -> Credential:
    return Credential(
        registry_host=REGISTRY_HOST,
        username="AWS",
        password="secret",
        valid_until=NOW + timedelta(hours=12),
    )


@pytest.fixture
def ecr_client():
    """Mock boto3 ECR client returning a single valid authorization record."""
    mock = MagicMock()
    mock.get_authorization_token.return_value = {"authorizationData": [authorization_record()]}
    return mock


@pytest.fixture
def core_v1():
    return MagicMock()


@pytest.fixture
def k8s_client(core_v1) -> KubernetesClient:
    return KubernetesClient(v1=core_v1)
