"""
Unit tests for the credential refresher.

Covers token decoding, the credential slot and the refresh loop's
expiry-driven scheduling and failure backoff.
"""

import base64
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from kube_ecr_refresher.errors import (
    MalformedTokenError,
    NotReadyError,
    TokenSourceError,
    UnexpectedResultCountError,
)
from kube_ecr_refresher.refresher import (
    CredentialRefresher,
    CredentialSlot,
    parse_authorization_data,
)
from tests.conftest import NOW, REGISTRY_HOST, authorization_record


def access_denied():
    return ClientError(
        {"Error": {"Code": "AccessDeniedException", "Message": "not authorized"}},
        "GetAuthorizationToken",
    )


class TestParseAuthorizationData:
    """Test decoding of GetAuthorizationToken results."""

    def test_decodes_single_record(self):
        """Should strip the scheme and split the token into username and password."""
        credential = parse_authorization_data([authorization_record()])

        assert credential.registry_host == REGISTRY_HOST
        assert credential.username == "AWS"
        assert credential.password == "secret"
        assert credential.valid_until == NOW + timedelta(hours=12)

    def test_endpoint_without_scheme_is_kept(self):
        credential = parse_authorization_data([authorization_record(endpoint=REGISTRY_HOST)])
        assert credential.registry_host == REGISTRY_HOST

    @pytest.mark.parametrize("count", [0, 2])
    def test_rejects_wrong_record_count(self, count):
        """Should raise UnexpectedResultCountError unless exactly one record is returned."""
        with pytest.raises(UnexpectedResultCountError) as exc_info:
            parse_authorization_data([authorization_record()] * count)

        assert exc_info.value.count == count
        assert f"got {count}" in str(exc_info.value)

    @pytest.mark.parametrize("decoded", [b"AWS", b"AWS:secret:extra", b""])
    def test_rejects_token_without_exactly_two_parts(self, decoded):
        token = base64.b64encode(decoded).decode()
        with pytest.raises(MalformedTokenError):
            parse_authorization_data([authorization_record(token=token)])

    def test_rejects_non_base64_token(self):
        with pytest.raises(MalformedTokenError):
            parse_authorization_data([authorization_record(token="not base64!")])

    def test_rejects_missing_fields(self):
        record = authorization_record()
        del record["expiresAt"]
        with pytest.raises(MalformedTokenError) as exc_info:
            parse_authorization_data([record])
        assert "expiresAt" in str(exc_info.value)

    def test_repr_hides_password(self):
        credential = parse_authorization_data([authorization_record()])
        assert "secret" not in repr(credential)


class TestCredentialSlot:
    """Test the shared credential holder."""

    def test_starts_empty(self):
        assert CredentialSlot().get() is None

    def test_replace_and_clear(self, credential):
        slot = CredentialSlot()
        slot.replace(credential)
        assert slot.get() is credential

        slot.clear()
        assert slot.get() is None


class TestRefreshOnce:
    """Test a single call against the token source."""

    def test_calls_token_source_once(self, ecr_client):
        refresher = CredentialRefresher(ecr_client)

        credential = refresher.refresh_once()

        assert credential.username == "AWS"
        ecr_client.get_authorization_token.assert_called_once_with()

    def test_passes_registry_id(self, ecr_client):
        refresher = CredentialRefresher(ecr_client, registry_id="123")

        refresher.refresh_once()

        ecr_client.get_authorization_token.assert_called_once_with(registryIds=["123"])

    def test_wraps_client_errors(self):
        ecr_client = MagicMock()
        ecr_client.get_authorization_token.side_effect = access_denied()
        refresher = CredentialRefresher(ecr_client)

        with pytest.raises(TokenSourceError) as exc_info:
            refresher.refresh_once()

        assert isinstance(exc_info.value.cause, ClientError)

    def test_refresh_once_does_not_touch_slot(self, ecr_client):
        refresher = CredentialRefresher(ecr_client)
        refresher.refresh_once()
        with pytest.raises(NotReadyError):
            refresher.get()


class TestRefreshLoop:
    """Test the background refresh loop."""

    def test_get_before_first_refresh_is_not_ready(self, ecr_client):
        refresher = CredentialRefresher(ecr_client)
        with pytest.raises(NotReadyError):
            refresher.get()

    def test_success_schedules_before_expiry(self, ecr_client):
        """Should store the credential and hold until expiry minus the safety margin."""
        refresher = CredentialRefresher(ecr_client, clock=lambda: NOW)

        def respond(**_):
            refresher.stop()
            return {"authorizationData": [authorization_record()]}

        ecr_client.get_authorization_token.side_effect = respond

        refresher.run()

        credential = refresher.get()
        assert credential.registry_host == REGISTRY_HOST
        assert credential.password == "secret"
        assert refresher.next_refresh_at == NOW + timedelta(hours=12) - timedelta(minutes=1)
        assert refresher.wait_first_attempt(timeout=0) is True

    def test_failure_clears_slot_and_backs_off(self, credential):
        """Should drop a previously valid credential when a refresh fails."""
        ecr_client = MagicMock()
        refresher = CredentialRefresher(
            ecr_client, backoff=timedelta(minutes=1), clock=lambda: NOW)
        refresher.slot.replace(credential)

        def respond(**_):
            refresher.stop()
            raise access_denied()

        ecr_client.get_authorization_token.side_effect = respond

        refresher.run()

        with pytest.raises(NotReadyError):
            refresher.get()
        assert refresher.next_refresh_at == NOW + timedelta(minutes=1)

    def test_unexpected_error_does_not_kill_loop(self):
        """Should treat any error from the token source as a failed refresh."""
        ecr_client = MagicMock()
        refresher = CredentialRefresher(
            ecr_client, backoff=timedelta(milliseconds=10), clock=lambda: NOW)
        calls = []

        def respond(**_):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("connection pool exploded")
            refresher.stop()
            return {"authorizationData": [authorization_record()]}

        ecr_client.get_authorization_token.side_effect = respond

        refresher.run()

        assert len(calls) == 2
        assert refresher.get().password == "secret"

    def test_unexpected_error_leaves_slot_empty(self, credential):
        ecr_client = MagicMock()
        refresher = CredentialRefresher(ecr_client, clock=lambda: NOW)
        refresher.slot.replace(credential)

        def respond(**_):
            refresher.stop()
            raise RuntimeError("boom")

        ecr_client.get_authorization_token.side_effect = respond

        refresher.run()

        assert refresher.slot.get() is None
        assert refresher.next_refresh_at == NOW + timedelta(minutes=1)

    def test_target_in_the_past_backs_off_instead_of_spinning(self, ecr_client):
        """Should not call the token source again at once when the margin exceeds the lifetime."""
        refresher = CredentialRefresher(
            ecr_client,
            safety_margin=timedelta(hours=13),
            backoff=timedelta(minutes=1),
            clock=lambda: NOW,
        )

        def respond(**_):
            refresher.stop()
            return {"authorizationData": [authorization_record()]}

        ecr_client.get_authorization_token.side_effect = respond

        refresher.run()

        assert refresher.next_refresh_at == NOW + timedelta(minutes=1)
        assert refresher.get().password == "secret"

    def test_wrong_record_count_clears_slot(self, credential):
        ecr_client = MagicMock()
        refresher = CredentialRefresher(ecr_client, clock=lambda: NOW)
        refresher.slot.replace(credential)

        def respond(**_):
            refresher.stop()
            return {"authorizationData": []}

        ecr_client.get_authorization_token.side_effect = respond

        refresher.run()

        assert refresher.slot.get() is None
        assert refresher.wait_first_attempt(timeout=0) is False

    def test_stop_interrupts_wait(self, ecr_client):
        """Should return promptly from a long hold when stopped from another thread."""
        refresher = CredentialRefresher(ecr_client, clock=lambda: NOW)
        thread = refresher.start()
        assert refresher.wait_first_attempt(timeout=5) is True

        refresher.stop(timeout=5)

        assert not thread.is_alive()
        assert refresher.stopped
