"""
Amazon ECR credential refresher

Keeps a single ECR authorization token valid by refreshing it shortly before
it expires, backing off after failures. The current credential lives in a
lock-guarded slot that the refresh thread replaces atomically and readers
query without blocking.
"""

import base64
import binascii
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from kube_ecr_refresher import metrics
from kube_ecr_refresher.errors import (
    MalformedTokenError,
    NotReadyError,
    SourceError,
    TokenSourceError,
    UnexpectedResultCountError,
)
from kube_ecr_refresher.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SAFETY_MARGIN = timedelta(minutes=1)
DEFAULT_BACKOFF = timedelta(minutes=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    """Decoded authentication data for an Amazon ECR registry"""

    registry_host: str
    username: str
    password: str
    valid_until: datetime

    def __repr__(self) -> str:
        return (
            f"Credential(registry_host={self.registry_host!r}, "
            f"username={self.username!r}, password='***', "
            f"valid_until={self.valid_until.isoformat()})"
        )


class CredentialSlot:
    """Holds the current credential.

    get() returns the last value stored by replace(), or None after clear().
    The lock only guards the reference swap, never any I/O.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Optional[Credential] = None

    def get(self) -> Optional[Credential]:
        with self._lock:
            return self._current

    def replace(self, credential: Credential) -> None:
        with self._lock:
            self._current = credential

    def clear(self) -> None:
        with self._lock:
            self._current = None


def create_ecr_client(region_name: Optional[str] = None):
    """Build the boto3 ECR client used as the token source"""
    return boto3.client("ecr", region_name=region_name)


def parse_authorization_data(authorization_data) -> Credential:
    """Turn the authorizationData list of a GetAuthorizationToken response into a Credential"""
    if len(authorization_data) != 1:
        raise UnexpectedResultCountError(len(authorization_data))
    record = authorization_data[0]
    missing = [k for k in ("proxyEndpoint", "authorizationToken", "expiresAt") if not record.get(k)]
    if missing:
        raise MalformedTokenError(f"authorization data is missing {', '.join(missing)}")

    server = record["proxyEndpoint"]
    if server.startswith("https://"):
        server = server[len("https://"):]

    try:
        decoded = base64.b64decode(record["authorizationToken"], validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise MalformedTokenError("AWS returned a token that is not valid base64", cause=e)
    parts = decoded.split(":")
    if len(parts) != 2:
        raise MalformedTokenError("AWS returned a malformed token")

    valid_until = record["expiresAt"]
    if valid_until.tzinfo is None:
        valid_until = valid_until.replace(tzinfo=timezone.utc)

    return Credential(
        registry_host=server,
        username=parts[0],
        password=parts[1],
        valid_until=valid_until,
    )


class CredentialRefresher:
    """Knows how to keep authentication data for an Amazon ECR registry fresh"""

    def __init__(
        self,
        ecr_client,
        registry_id: Optional[str] = None,
        safety_margin: timedelta = DEFAULT_SAFETY_MARGIN,
        backoff: timedelta = DEFAULT_BACKOFF,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ecr_client = ecr_client
        self.registry_id = registry_id
        self.safety_margin = safety_margin
        self.backoff = backoff
        self.clock = clock
        self.slot = CredentialSlot()
        self.next_refresh_at: Optional[datetime] = None
        self._stop = threading.Event()
        self._first_attempt = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def get(self) -> Credential:
        """Return the current credential without waiting for a refresh"""
        credential = self.slot.get()
        if credential is None:
            raise NotReadyError("no Amazon ECR authentication data currently exists")
        return credential

    def refresh_once(self) -> Credential:
        """Fetch and decode a fresh credential, calling the token source exactly once"""
        kwargs = {}
        if self.registry_id:
            kwargs["registryIds"] = [self.registry_id]
        try:
            response = self.ecr_client.get_authorization_token(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise TokenSourceError(f"GetAuthorizationToken failed: {e}", cause=e)
        return parse_authorization_data(response.get("authorizationData") or [])

    def _refresh_and_schedule(self) -> datetime:
        """Run one refresh and return the instant at which the next one is due"""
        logger.debug("Attempting to refresh Amazon ECR authentication data")
        try:
            credential = self.refresh_once()
        except SourceError as e:
            logger.error(
                "Failed to refresh Amazon ECR authentication data",
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._fail()
        except Exception as e:
            logger.error(
                "Unexpected error refreshing Amazon ECR authentication data",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return self._fail()

        self.slot.replace(credential)
        metrics.record_refresh_success(credential.valid_until)
        logger.info(
            "Amazon ECR authentication data refreshed",
            registry=credential.registry_host,
            valid_until=credential.valid_until.isoformat(),
        )
        now = self.clock()
        target = credential.valid_until - self.safety_margin
        if target <= now:
            # Margin too large or clock skew; never spin on the token source.
            logger.warning(
                "Refresh target is not in the future, backing off instead",
                valid_until=credential.valid_until.isoformat(),
                safety_margin_seconds=self.safety_margin.total_seconds(),
            )
            return now + self.backoff
        return target

    def _fail(self) -> datetime:
        self.slot.clear()
        metrics.record_refresh_failure()
        return self.clock() + self.backoff

    def run(self) -> None:
        """Refresh until stop() is called"""
        while not self._stop.is_set():
            self.next_refresh_at = self._refresh_and_schedule()
            self._first_attempt.set()
            logger.debug(
                "Holding on refreshing Amazon ECR authentication data",
                until=self.next_refresh_at.isoformat(),
            )
            delay = (self.next_refresh_at - self.clock()).total_seconds()
            if self._stop.wait(max(delay, 0)):
                break
        logger.info("Credential refresher stopped")

    def wait_first_attempt(self, timeout: Optional[float] = None) -> bool:
        """Wait for the first refresh attempt to finish; True if it left a credential"""
        self._first_attempt.wait(timeout)
        return self.slot.get() is not None

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name="credential-refresher", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()
