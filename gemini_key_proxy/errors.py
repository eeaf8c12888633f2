from __future__ import annotations

from fastapi import status


class ProxyError(Exception):
    """Base class for failures that map to a synthesized response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type: str = "proxy_error"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(ProxyError):
    """Raised when the key pool or the expected caller secret is not configured."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_type = "configuration_error"


class AuthError(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_type = "authentication_error"


class RetryableUpstreamError(ProxyError):
    """Transient upstream failure; absorbed by the retry loop and kept as its last error."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "upstream_retryable"


class TerminalUpstreamError(ProxyError):
    status_code = status.HTTP_502_BAD_GATEWAY
    error_type = "upstream_terminal"


class ExhaustionError(ProxyError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_type = "upstream_exhausted"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        attempts: int = 0,
        last_error: ProxyError | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.attempts = attempts
        self.last_error = last_error


class ClientDisconnectedError(ProxyError):
    status_code = 499
    error_type = "client_disconnected"


class CredentialPoolExhausted(LookupError):
    """Raised by CredentialPool.draw() when no credential remains."""
