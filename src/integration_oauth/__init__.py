"""
OAuth 2.0 Authorization Code client for third-party integrations.

This module connects the platform to third-party integrations (payment
processors, accounting and messaging tools, ad platforms) with the OAuth 2.0
Authorization Code grant plus refresh. The flow is stateless between the
authorization request and the callback: the state parameter is signed and
carries everything the callback needs.

Public API:
    ProviderConfig: Per-provider client configuration
    ProviderRegistry: Provider lookup by key
    OAuthSettings: Process-wide settings
    StateClaims / SignedStateEnvelope / StateCodec: Signed state parameter
    build_authorization_url: Authorization redirect URL
    TokenRecord: Normalized token data
    TokenExchanger: Token endpoint grants
    TokenStore / FileTokenStore: Token persistence
    CallbackOrchestrator: High-level OAuth interface
    CallbackResult / FailureReason: Orchestrator outcomes

Exceptions:
    IntegrationOAuthError: Base exception
    ConfigurationError: Configuration error
    InvalidStateError: State rejected (StateDecodeError, StateVerificationError)
    TokenExchangeError: Token endpoint request failed
    TransportError: Network failure reaching the provider
    TokenStorageError: Storage operation failed
    TokenNotAvailableError: No valid tokens
"""

from .authorization_url import build_authorization_url
from .config import OAuthSettings, ProviderConfig, ProviderRegistry
from .exceptions import (
    ConfigurationError,
    ExchangeErrorKind,
    IntegrationOAuthError,
    InvalidStateError,
    StateDecodeError,
    StateVerificationError,
    TokenExchangeError,
    TokenNotAvailableError,
    TokenStorageError,
    TransportError,
    VerificationFailure,
)
from .http_client import HttpResponse, NetworkRequester, RequestsRequester
from .orchestrator import (
    CallbackOrchestrator,
    CallbackResult,
    FailureReason,
    InMemoryNonceGuard,
    LoggingObserver,
    OAuthOutcome,
)
from .state_codec import SignedStateEnvelope, StateClaims, StateCodec
from .token_exchanger import TokenExchanger, parse_token_response
from .token_storage import FileTokenStore, TokenRecord, TokenStore

__all__ = [
    # Configuration
    "OAuthSettings",
    "ProviderConfig",
    "ProviderRegistry",
    # State
    "StateClaims",
    "SignedStateEnvelope",
    "StateCodec",
    "build_authorization_url",
    # Token exchange
    "HttpResponse",
    "NetworkRequester",
    "RequestsRequester",
    "TokenExchanger",
    "parse_token_response",
    # Token storage
    "TokenRecord",
    "TokenStore",
    "FileTokenStore",
    # Orchestrator
    "CallbackOrchestrator",
    "CallbackResult",
    "FailureReason",
    "InMemoryNonceGuard",
    "LoggingObserver",
    "OAuthOutcome",
    # Exceptions
    "IntegrationOAuthError",
    "ConfigurationError",
    "InvalidStateError",
    "StateDecodeError",
    "StateVerificationError",
    "VerificationFailure",
    "TokenExchangeError",
    "ExchangeErrorKind",
    "TransportError",
    "TokenStorageError",
    "TokenNotAvailableError",
]
