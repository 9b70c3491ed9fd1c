"""
Error hierarchy for Kube ECR Refresher

Every runtime error is handled inside the loop that raised it: source errors
clear the current credential, cycle-level errors skip the cycle and per-namespace
errors stay isolated to their namespace. Only ConfigError reaches main().
"""

from typing import Optional


class RefresherError(Exception):
    """Base error class for all refresher-related exceptions."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause


class ConfigError(RefresherError):
    """Invalid startup configuration."""


class SourceError(RefresherError):
    """Failure to obtain a credential from the token source."""


class TokenSourceError(SourceError):
    """The token source call itself failed (transport, auth, throttling)."""


class MalformedTokenError(SourceError):
    """The authorization token did not decode to 'username:password'."""


class UnexpectedResultCountError(SourceError):
    """The token source returned other than exactly one authorization record."""

    def __init__(self, count: int):
        super().__init__(f"expected a single result (got {count})")
        self.count = count


class NotReadyError(RefresherError):
    """No valid credential is currently available."""


class ListError(RefresherError):
    """Target namespaces could not be enumerated."""


class PerNamespaceWriteError(RefresherError):
    """Creating or updating the secret in a single namespace failed."""

    def __init__(self, namespace: str, message: str, cause: Optional[Exception] = None):
        super().__init__(f"namespace {namespace!r}: {message}", cause=cause)
        self.namespace = namespace
