from __future__ import annotations

from enum import Enum

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import DBAPIError, OperationalError


class ErrorCode(str, Enum):
    TRANSIENT = "transient"
    CREDENTIAL = "credential"
    MALFORMED = "malformed"
    TERMINAL = "terminal"
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"


class MailShieldError(Exception):
    """Base error for MailShield."""

    code: ErrorCode = ErrorCode.TERMINAL


class ProviderError(MailShieldError):
    """Mailbox provider API failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.retry_after = retry_after
        if status_code is not None and (status_code == 429 or status_code >= 500):
            self.code = ErrorCode.TRANSIENT
        elif status_code in {401, 403}:
            self.code = ErrorCode.CREDENTIAL
        elif status_code == 404:
            self.code = ErrorCode.NOT_FOUND


class TransientProviderError(ProviderError):
    """Provider call failed at the transport level; safe to retry."""

    code = ErrorCode.TRANSIENT


class CredentialError(MailShieldError):
    """Access token rejected or refresh token no longer valid."""

    code = ErrorCode.CREDENTIAL


class MalformedNotificationError(MailShieldError):
    """Provider notification payload could not be decoded."""

    code = ErrorCode.MALFORMED


class IntegrationUnavailableError(MailShieldError):
    """Circuit breaker is open for an integration."""

    code = ErrorCode.TRANSIENT


class IntegrationNotConnectedError(MailShieldError):
    """Integration row is missing or no longer connected."""

    code = ErrorCode.TERMINAL


class WorkIncompleteError(MailShieldError):
    """Work item stopped early on time budget or message cap."""

    code = ErrorCode.TRANSIENT


class RemediationError(MailShieldError):
    """Remediation transition could not be applied."""

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


_TRANSIENT_TYPES = (
    TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    RedisConnectionError,
    RedisTimeoutError,
    OperationalError,
)


def classify_error(exc: BaseException) -> ErrorCode:
    # Classify by type and typed code, never by message text.
    if isinstance(exc, MailShieldError):
        return exc.code
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorCode.TRANSIENT
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return ErrorCode.TRANSIENT
    return ErrorCode.TERMINAL


def is_retryable(exc: BaseException) -> bool:
    return classify_error(exc) == ErrorCode.TRANSIENT
