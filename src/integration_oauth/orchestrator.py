"""
Callback orchestrator for integration OAuth.

This module provides the main interface for OAuth operations in the
application. It ties together the state codec, the token exchanger and
the token store:

- authorization_url(): start a connection flow
- handle_callback(): finish it when the provider redirects back
- refresh_token(): renew credentials (background jobs)
- get_valid_access_token(): lazy refresh-on-use
- disconnect(): forget the stored tokens of an integration

Expected callback and refresh failures never raise; they come back as a
CallbackResult with a FailureReason. Only ConfigurationError (a deployment
problem) propagates.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Union

from .authorization_url import build_authorization_url
from .config import ProviderRegistry
from .exceptions import (
    ExchangeErrorKind,
    InvalidStateError,
    StateVerificationError,
    TokenExchangeError,
    TokenNotAvailableError,
    TokenStorageError,
)
from .state_codec import DEFAULT_MAX_AGE, StateClaims, StateCodec, generate_nonce, utcnow
from .token_exchanger import TokenExchanger
from .token_storage import TokenRecord, TokenStore

logger = logging.getLogger(__name__)

# Standard OAuth error codes that are safe to show to end users
_DISPLAYABLE_PROVIDER_ERRORS = {
    "access_denied",
    "invalid_grant",
    "invalid_scope",
    "unauthorized_client",
    "temporarily_unavailable",
}


class FailureReason(str, Enum):
    """Why a callback or refresh did not succeed."""

    INVALID_STATE = "invalid_state"
    EXCHANGE_FAILED = "exchange_failed"
    NETWORK_ERROR = "network_error"
    PERSISTENCE_FAILED = "persistence_failed"


@dataclass
class CallbackResult:
    """
    Outcome of handle_callback or refresh_token.

    Attributes:
        success: Whether the operation succeeded
        tokens: Tokens obtained (on success, and on PERSISTENCE_FAILED)
        claims: Verified state claims (callbacks only)
        failure: Failure reason (if failed)
        detail: Server-side diagnostic detail (if failed)
        provider_error: OAuth error code returned by the provider, if any
        provider_key: Provider the operation ran against, if known
    """

    success: bool
    tokens: Optional[TokenRecord] = None
    claims: Optional[StateClaims] = None
    failure: Optional[FailureReason] = None
    detail: Optional[str] = None
    provider_error: Optional[str] = None
    provider_key: Optional[str] = None

    @classmethod
    def ok(
        cls,
        tokens: TokenRecord,
        claims: Optional[StateClaims] = None,
        provider_key: Optional[str] = None,
    ) -> "CallbackResult":
        return cls(success=True, tokens=tokens, claims=claims, provider_key=provider_key)

    @classmethod
    def fail(
        cls,
        failure: FailureReason,
        detail: Optional[str] = None,
        **kwargs,
    ) -> "CallbackResult":
        return cls(success=False, failure=failure, detail=detail, **kwargs)

    @property
    def is_retryable(self) -> bool:
        """True for failures a caller may retry (refresh only; codes are single-use)."""
        return self.failure is FailureReason.NETWORK_ERROR

    @property
    def user_message(self) -> str:
        """Sanitized message suitable for end users."""
        provider = (self.provider_key or "the provider").capitalize()
        if self.success:
            return f"{provider} connected successfully."
        if self.failure is FailureReason.INVALID_STATE:
            return (
                "This connection request is invalid or has expired. "
                "Please restart the connection flow."
            )
        if self.failure is FailureReason.NETWORK_ERROR:
            return f"We could not reach {provider}. Please try again in a few minutes."
        if self.failure is FailureReason.PERSISTENCE_FAILED:
            return (
                f"{provider} authorized the connection but it could not be saved. "
                "Please reconnect the integration."
            )
        message = f"{provider} did not accept the authorization."
        if self.provider_error in _DISPLAYABLE_PROVIDER_ERRORS:
            message += f" (error: {self.provider_error})"
        return message + " Please try connecting again."


@dataclass(frozen=True)
class OAuthOutcome:
    """Structured outcome reported to observers."""

    operation: str  # "callback" | "refresh" | "disconnect"
    success: bool
    reason: Optional[FailureReason] = None
    provider_key: Optional[str] = None
    integration_id: Optional[Union[int, str]] = None
    detail: Optional[str] = None


class OutcomeObserver(Protocol):
    """Receives the outcome of every callback, refresh and disconnect."""

    def record(self, outcome: OAuthOutcome) -> None:
        ...


class LoggingObserver:
    """Default observer: writes outcomes to the module logger."""

    def record(self, outcome: OAuthOutcome) -> None:
        target = f"provider={outcome.provider_key} integration={outcome.integration_id}"
        if outcome.success:
            logger.info(f"OAuth {outcome.operation} succeeded ({target})")
        elif outcome.reason is FailureReason.PERSISTENCE_FAILED:
            # After a callback the grant is complete at the provider; the
            # integration may need a manual reconnect
            logger.error(
                f"OAuth {outcome.operation} could not update the token store "
                f"({target}): {outcome.detail}"
            )
        elif outcome.reason is None:
            logger.warning(f"OAuth {outcome.operation} did nothing ({target}): {outcome.detail}")
        else:
            logger.warning(
                f"OAuth {outcome.operation} failed: {outcome.reason.value} "
                f"({target}): {outcome.detail}"
            )


class NonceGuard(Protocol):
    """Single-use registry of state nonces."""

    def claim(self, nonce: str, expires_at: datetime) -> bool:
        """Record the nonce; return False if it was already used."""
        ...


class InMemoryNonceGuard:
    """
    Process-local NonceGuard.

    Only rejects replays that reach the same process; a horizontally
    scaled deployment needs a shared implementation (e.g. backed by the
    token store's database).
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._seen: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def claim(self, nonce: str, expires_at: datetime) -> bool:
        now = self.clock()
        with self._lock:
            self._seen = {n: exp for n, exp in self._seen.items() if exp >= now}
            if nonce in self._seen:
                return False
            self._seen[nonce] = expires_at
            return True

    def __len__(self) -> int:
        return len(self._seen)


class CallbackOrchestrator:
    """
    High-level coordinator for integration OAuth.

    This is the main interface that route handlers and background jobs
    should use.

    Example:
        orchestrator = CallbackOrchestrator(providers, secret, store)
        url = orchestrator.authorization_url("google", "u1", "o1", 42)
        # ... user authorizes, provider redirects back ...
        result = orchestrator.handle_callback(code, state)
        if not result.success:
            show(result.user_message)
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        secret: Union[bytes, str],
        token_store: TokenStore,
        exchanger: Optional[TokenExchanger] = None,
        observer: Optional[OutcomeObserver] = None,
        nonce_guard: Optional[NonceGuard] = None,
        max_age: timedelta = DEFAULT_MAX_AGE,
        refresh_buffer_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
        nonce_factory: Callable[[], str] = generate_nonce,
    ):
        """
        Initialize orchestrator.

        Args:
            providers: Provider configurations
            secret: State signing secret
            token_store: Where obtained tokens are persisted
            exchanger: Token exchanger (requests-based if not provided)
            observer: Outcome observer (logs outcomes if not provided)
            nonce_guard: Optional single-use nonce registry for replay rejection
            max_age: Maximum age of a state parameter
            refresh_buffer_seconds: Refresh tokens this many seconds before expiry
            clock: Time source
            nonce_factory: Nonce source for new authorization attempts
        """
        self.providers = providers
        self.codec = StateCodec(
            secret, max_age=max_age, clock=clock, nonce_factory=nonce_factory
        )
        self.token_store = token_store
        self.exchanger = exchanger or TokenExchanger()
        self.observer = observer or LoggingObserver()
        self.nonce_guard = nonce_guard
        self.refresh_buffer_seconds = refresh_buffer_seconds

    def authorization_url(
        self,
        provider_key: Optional[str],
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> str:
        """
        Start a connection flow.

        Returns:
            URL to redirect the user's browser to

        Raises:
            ConfigurationError: If the provider is not configured
        """
        config = self.providers.get(provider_key)
        claims = self.codec.new_claims(
            user_id, organization_id, integration_id, provider_key=config.key
        )
        logger.info(
            f"Starting OAuth connection with '{config.key}' for integration {integration_id}"
        )
        return build_authorization_url(config, claims, self.codec.secret)

    def handle_callback(
        self,
        code: Optional[str],
        raw_state: Optional[str],
        expected_user_id: Optional[str] = None,
    ) -> CallbackResult:
        """
        Finish a connection flow from the provider redirect.

        Steps: decode state → verify state → exchange code → persist tokens.
        Must be called at most once per authorization code.

        Args:
            code: ``code`` query parameter from the redirect
            raw_state: ``state`` query parameter from the redirect
            expected_user_id: User signed in on the callback request, if known;
                a state issued to another user is rejected

        Returns:
            CallbackResult

        Raises:
            ConfigurationError: If the state names a provider that is not configured
        """
        try:
            claims = self.codec.open(raw_state or "")
        except InvalidStateError as e:
            reason = e.reason.value if isinstance(e, StateVerificationError) else "undecodable"
            logger.warning(f"Rejected OAuth callback state ({reason}): {e}")
            return self._finish_callback(
                CallbackResult.fail(FailureReason.INVALID_STATE, "State rejected"), None
            )

        config = self.providers.get(claims.provider_key)

        if expected_user_id is not None and str(claims.user_id) != str(expected_user_id):
            logger.warning(
                f"Rejected OAuth callback for integration {claims.integration_id}: "
                f"state was issued to a different user"
            )
            return self._finish_callback(
                CallbackResult.fail(
                    FailureReason.INVALID_STATE,
                    "State issued to another user",
                    provider_key=config.key,
                ),
                claims,
            )

        if self.nonce_guard is not None:
            expires_at = claims.issued_at + self.codec.max_age
            if not self.nonce_guard.claim(claims.nonce, expires_at):
                logger.warning(
                    f"Rejected replayed OAuth state for integration {claims.integration_id}"
                )
                return self._finish_callback(
                    CallbackResult.fail(
                        FailureReason.INVALID_STATE,
                        "State already used",
                        provider_key=config.key,
                    ),
                    claims,
                )

        if not code:
            return self._finish_callback(
                CallbackResult.fail(
                    FailureReason.EXCHANGE_FAILED,
                    "No authorization code received",
                    claims=claims,
                    provider_key=config.key,
                ),
                claims,
            )

        try:
            tokens = self.exchanger.exchange_code(config, code)
        except TokenExchangeError as e:
            return self._finish_callback(
                self._exchange_failure(e, config.key, claims), claims
            )

        try:
            self.token_store.save(
                claims.user_id, claims.organization_id, claims.integration_id, tokens
            )
        except TokenStorageError as e:
            return self._finish_callback(
                CallbackResult.fail(
                    FailureReason.PERSISTENCE_FAILED,
                    str(e),
                    tokens=tokens,
                    claims=claims,
                    provider_key=config.key,
                ),
                claims,
            )

        return self._finish_callback(
            CallbackResult.ok(tokens, claims, provider_key=config.key), claims
        )

    def refresh_token(self, provider_key: Optional[str], refresh_token: str) -> CallbackResult:
        """
        Obtain a new access token with a refresh token.

        No state is involved and nothing is persisted; the caller stores the
        returned tokens. Safe to retry on NETWORK_ERROR.

        Returns:
            CallbackResult with tokens on success

        Raises:
            ConfigurationError: If the provider is not configured
        """
        config = self.providers.get(provider_key)
        try:
            tokens = self.exchanger.refresh(config, refresh_token)
        except TokenExchangeError as e:
            result = self._exchange_failure(e, config.key, None)
        else:
            result = CallbackResult.ok(tokens, provider_key=config.key)

        self.observer.record(
            OAuthOutcome(
                operation="refresh",
                success=result.success,
                reason=result.failure,
                provider_key=config.key,
                detail=result.detail,
            )
        )
        return result

    def get_valid_access_token(
        self,
        provider_key: Optional[str],
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> str:
        """
        Get a valid access token for a connection, refreshing if necessary.

        Refreshed tokens are written back to the token store.

        Returns:
            Valid access token string

        Raises:
            TokenNotAvailableError: If nothing is stored, or the token expired
                and could not be refreshed (reconnect required)
        """
        tokens = self.token_store.load(user_id, organization_id, integration_id)
        if tokens is None:
            raise TokenNotAvailableError(
                f"No tokens stored for integration {integration_id}. Connect it first."
            )

        if not tokens.expires_within(self.refresh_buffer_seconds):
            return tokens.access_token

        if not tokens.refresh_token:
            if tokens.is_expired:
                raise TokenNotAvailableError(
                    f"Access token for integration {integration_id} expired "
                    f"and no refresh token is available. Reconnect required."
                )
            return tokens.access_token

        logger.info(
            f"Token for integration {integration_id} expires soon "
            f"(within {self.refresh_buffer_seconds}s), refreshing..."
        )
        result = self.refresh_token(provider_key, tokens.refresh_token)
        if not result.success:
            if not tokens.is_expired:
                logger.warning(
                    f"Refresh failed for integration {integration_id}, "
                    f"using current token until it expires"
                )
                return tokens.access_token
            raise TokenNotAvailableError(
                f"Could not refresh token for integration {integration_id}: {result.detail}"
            )

        try:
            self.token_store.save(user_id, organization_id, integration_id, result.tokens)
        except TokenStorageError as e:
            logger.error(f"Refreshed tokens for integration {integration_id} not saved: {e}")

        return result.tokens.access_token

    def disconnect(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> bool:
        """
        Disconnect an integration by deleting its stored tokens.

        Tokens are not revoked at the provider.

        Returns:
            True if tokens were deleted, False if the integration was not connected

        Raises:
            TokenStorageError: If the token store could not be updated
        """
        try:
            deleted = self.token_store.delete(user_id, organization_id, integration_id)
        except TokenStorageError as e:
            self.observer.record(
                OAuthOutcome(
                    operation="disconnect",
                    success=False,
                    reason=FailureReason.PERSISTENCE_FAILED,
                    integration_id=integration_id,
                    detail=str(e),
                )
            )
            raise

        self.observer.record(
            OAuthOutcome(
                operation="disconnect",
                success=deleted,
                integration_id=integration_id,
                detail=None if deleted else "Integration not connected",
            )
        )
        return deleted

    def _exchange_failure(
        self,
        error: TokenExchangeError,
        provider_key: str,
        claims: Optional[StateClaims],
    ) -> CallbackResult:
        reason = (
            FailureReason.NETWORK_ERROR
            if error.kind is ExchangeErrorKind.NETWORK_ERROR
            else FailureReason.EXCHANGE_FAILED
        )
        return CallbackResult.fail(
            reason,
            error.detail,
            claims=claims,
            provider_error=error.provider_error,
            provider_key=provider_key,
        )

    def _finish_callback(
        self, result: CallbackResult, claims: Optional[StateClaims]
    ) -> CallbackResult:
        self.observer.record(
            OAuthOutcome(
                operation="callback",
                success=result.success,
                reason=result.failure,
                provider_key=result.provider_key,
                integration_id=claims.integration_id if claims else None,
                detail=result.detail,
            )
        )
        return result
