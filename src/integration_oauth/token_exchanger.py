"""
Token exchanger for integration OAuth.

This module performs the two token endpoint grants:
- authorization_code: authorization code → access/refresh tokens
- refresh_token: refresh token → new access token

Provider responses are parsed into a TokenRecord in one place
(parse_token_response). The exchanger never retries; retry policy belongs
to the caller.
"""

import json
import logging
from base64 import b64encode
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Sequence, Tuple
from urllib.parse import quote

from .config import CLIENT_SECRET_BASIC, ProviderConfig
from .exceptions import ExchangeErrorKind, TokenExchangeError, TransportError
from .http_client import DEFAULT_TIMEOUT, HttpResponse, NetworkRequester, RequestsRequester
from .token_storage import TokenRecord

logger = logging.getLogger(__name__)

# Provider error bodies can be large HTML pages; keep diagnostics bounded
MAX_ERROR_BODY = 500


def _parse_scopes(raw: Any, default: Sequence[str]) -> Tuple[str, ...]:
    if raw is None:
        return tuple(default)
    if isinstance(raw, str):
        # RFC 6749 uses spaces; some providers (Facebook, GitHub) use commas
        return tuple(s for s in raw.replace(",", " ").split() if s)
    if isinstance(raw, (list, tuple)):
        return tuple(str(s) for s in raw if s)
    raise ValueError(f"unexpected scope value {raw!r}")


def _parse_expires_in(raw: Any) -> Optional[int]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, bool):
        raise ValueError(f"unexpected expires_in value {raw!r}")
    if not isinstance(raw, (int, float, str)):
        raise ValueError(f"unexpected expires_in value {raw!r}")
    try:
        return int(float(raw))
    except OverflowError as e:
        raise ValueError(f"unexpected expires_in value {raw!r}") from e


def parse_token_response(
    data: Any,
    requested_scopes: Sequence[str] = (),
    fallback_refresh_token: Optional[str] = None,
    obtained_at: Optional[datetime] = None,
) -> TokenRecord:
    """
    Map a provider token response into a TokenRecord.

    Args:
        data: Decoded JSON body
        requested_scopes: Scopes to record when the provider omits ``scope``
        fallback_refresh_token: Refresh token to keep when the provider omits one
        obtained_at: Issue time (defaults to now)

    Returns:
        TokenRecord

    Raises:
        ValueError: If required fields are missing or have the wrong type
    """
    if not isinstance(data, dict):
        raise ValueError("token response is not a JSON object")

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ValueError("access_token missing from token response")

    refresh_token = data.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token:
        refresh_token = fallback_refresh_token

    token_type = data.get("token_type")
    if not isinstance(token_type, str) or not token_type:
        token_type = "Bearer"

    return TokenRecord(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type=token_type,
        scopes=_parse_scopes(data.get("scope"), requested_scopes),
        expires_in=_parse_expires_in(data.get("expires_in")),
        obtained_at=obtained_at or datetime.now(timezone.utc),
    )


def _provider_error(response: HttpResponse) -> Tuple[Optional[str], Optional[str]]:
    """Best-effort extraction of the OAuth error fields from an error body."""
    try:
        body = json.loads(response.text)
    except (ValueError, RecursionError):
        return None, None
    if not isinstance(body, dict):
        return None, None

    error = body.get("error")
    description = body.get("error_description")
    # Some providers nest the error object ({"error": {"message": ...}})
    if isinstance(error, dict):
        description = description or error.get("message")
        error = error.get("code") or error.get("type")
    return (
        str(error) if error is not None else None,
        str(description) if description is not None else None,
    )


class TokenExchanger:
    """
    Performs token endpoint requests for any configured provider.

    Stateless: the same instance can serve concurrent requests for different
    providers and users.
    """

    def __init__(
        self,
        requester: Optional[NetworkRequester] = None,
        timeout: float = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize token exchanger.

        Args:
            requester: Network requester (requests-based if not provided)
            timeout: Seconds to wait for the token endpoint
            clock: Time source used for TokenRecord.obtained_at
        """
        self.requester = requester or RequestsRequester()
        self.timeout = timeout
        self.clock = clock

    def exchange_code(self, config: ProviderConfig, code: str) -> TokenRecord:
        """
        Exchange an authorization code for tokens.

        Args:
            config: Provider configuration
            code: Code received on the OAuth callback

        Returns:
            TokenRecord with access (and usually refresh) token

        Raises:
            TokenExchangeError: If the exchange fails
        """
        logger.info(f"Exchanging authorization code with provider '{config.key}'")
        data = self._request(
            config,
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.redirect_uri,
            },
            operation="Token exchange",
        )
        token = self._parse(config, data, fallback_refresh_token=None)
        logger.info(f"Obtained tokens from provider '{config.key}'")
        return token

    def refresh(self, config: ProviderConfig, refresh_token: str) -> TokenRecord:
        """
        Refresh an access token.

        When the provider does not rotate the refresh token, the returned
        record keeps ``refresh_token``.

        Args:
            config: Provider configuration
            refresh_token: Current refresh token

        Returns:
            TokenRecord with a fresh access token

        Raises:
            TokenExchangeError: If the refresh fails
        """
        logger.info(f"Refreshing access token with provider '{config.key}'")
        data = self._request(
            config,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            operation="Token refresh",
        )
        token = self._parse(config, data, fallback_refresh_token=refresh_token)
        logger.info(f"Refreshed tokens from provider '{config.key}'")
        return token

    def _request(
        self, config: ProviderConfig, form: Dict[str, str], operation: str
    ) -> Any:
        headers = {
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        }
        if config.client_auth_method == CLIENT_SECRET_BASIC:
            # RFC 6749 §2.3.1: form-urlencode each part before joining
            credentials = (
                f"{quote(config.client_id, safe='')}:{quote(config.client_secret, safe='')}"
            )
            headers["Authorization"] = f"Basic {b64encode(credentials.encode()).decode()}"
        else:
            form = dict(
                form, client_id=config.client_id, client_secret=config.client_secret
            )

        try:
            response = self.requester.post(
                config.token_endpoint, data=form, headers=headers, timeout=self.timeout
            )
        except TransportError as e:
            logger.error(f"Network error during {operation.lower()} with '{config.key}': {e}")
            raise TokenExchangeError(
                ExchangeErrorKind.NETWORK_ERROR,
                f"Network error during {operation.lower()}: {e}",
            ) from e

        if not response.ok:
            error, description = _provider_error(response)
            logger.error(
                f"{operation} failed with '{config.key}': {response.status_code} - "
                f"{response.text[:MAX_ERROR_BODY]}"
            )
            detail = f"{operation} failed with status {response.status_code}"
            if error:
                detail += f": {error}"
                if description:
                    detail += f" ({description})"
            raise TokenExchangeError(
                ExchangeErrorKind.PROVIDER_ERROR,
                detail,
                status_code=response.status_code,
                provider_error=error,
                provider_error_description=description,
            )

        try:
            return json.loads(response.text)
        except (ValueError, RecursionError) as e:
            logger.error(f"Non-JSON response from '{config.key}' token endpoint: {e}")
            raise TokenExchangeError(
                ExchangeErrorKind.PARSE_ERROR,
                f"Invalid response from token endpoint: {e}",
                status_code=response.status_code,
            ) from e

    def _parse(
        self, config: ProviderConfig, data: Any, fallback_refresh_token: Optional[str]
    ) -> TokenRecord:
        try:
            return parse_token_response(
                data,
                requested_scopes=config.scopes,
                fallback_refresh_token=fallback_refresh_token,
                obtained_at=self.clock(),
            )
        except ValueError as e:
            logger.error(f"Invalid response from '{config.key}' token endpoint: {e}")
            raise TokenExchangeError(
                ExchangeErrorKind.PARSE_ERROR,
                f"Invalid response from token endpoint: {e}",
            ) from e
