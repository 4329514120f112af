"""
OAuth exception classes for third-party integrations.

This module defines the exception hierarchy for all OAuth-related errors.
Components raise these for expected failure modes (bad input, provider
errors, network errors); the callback orchestrator turns them into a
CallbackResult. Only ConfigurationError is meant to abort loudly.
"""

from enum import Enum
from typing import Optional


class IntegrationOAuthError(Exception):
    """Base exception for all integration OAuth errors."""

    pass


class ConfigurationError(IntegrationOAuthError):
    """OAuth configuration error (missing or invalid configuration)."""

    pass


class InvalidStateError(IntegrationOAuthError):
    """The state parameter returned by the provider cannot be trusted."""

    pass


class StateDecodeError(InvalidStateError):
    """The raw state string is not a well-formed signed envelope."""

    pass


class VerificationFailure(str, Enum):
    """Reason a decoded state envelope was rejected."""

    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"


class StateVerificationError(InvalidStateError):
    """Signed state failed signature, expiry or payload checks."""

    def __init__(self, reason: VerificationFailure, message: str = ""):
        self.reason = reason
        super().__init__(message or f"State verification failed: {reason.value}")


class TransportError(IntegrationOAuthError):
    """Network failure reaching the provider (unreachable, timeout, reset)."""

    pass


class ExchangeErrorKind(str, Enum):
    """Category of a failed token request."""

    NETWORK_ERROR = "network_error"
    PROVIDER_ERROR = "provider_error"
    PARSE_ERROR = "parse_error"


class TokenExchangeError(IntegrationOAuthError):
    """
    Token endpoint request failed.

    Attributes:
        kind: Failure category
        detail: Server-side diagnostic text (never shown to end users as-is)
        status_code: HTTP status returned by the provider, if any
        provider_error: OAuth ``error`` field from the provider body, if any
        provider_error_description: OAuth ``error_description`` field, if any
    """

    def __init__(
        self,
        kind: ExchangeErrorKind,
        detail: str,
        status_code: Optional[int] = None,
        provider_error: Optional[str] = None,
        provider_error_description: Optional[str] = None,
    ):
        self.kind = kind
        self.detail = detail
        self.status_code = status_code
        self.provider_error = provider_error
        self.provider_error_description = provider_error_description
        super().__init__(detail)


class TokenStorageError(IntegrationOAuthError):
    """Token storage operation failed (I/O error)."""

    pass


class TokenNotAvailableError(IntegrationOAuthError):
    """No valid tokens available (need to connect the integration first)."""

    pass
