"""
OAuth configuration for third-party integrations.

This module provides:
- ProviderConfig: immutable per-provider client configuration
- ProviderRegistry: lookup of provider configurations by key
- OAuthSettings: process-wide settings (signing secret, timeouts, storage)

Configuration can be loaded from environment variables or provided
programmatically. Nothing outside this module reads the environment.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, Mapping, Optional, Sequence, Tuple

from pydantic_settings import BaseSettings

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CLIENT_SECRET_POST = "client_secret_post"
CLIENT_SECRET_BASIC = "client_secret_basic"

# Well-known provider endpoints and default scopes, used when the
# environment does not override them.
PROVIDER_CATALOG: Dict[str, Dict[str, object]] = {
    "google": {
        "authorization_endpoint": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_endpoint": "https://oauth2.googleapis.com/token",
        "scopes": ("https://www.googleapis.com/auth/adwords",),
        "extra_authorize_params": {"access_type": "offline", "prompt": "consent"},
    },
    "meta": {
        "authorization_endpoint": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_endpoint": "https://graph.facebook.com/v18.0/oauth/access_token",
        "scopes": ("ads_read", "ads_management", "business_management"),
    },
    "linkedin": {
        "authorization_endpoint": "https://www.linkedin.com/oauth/v2/authorization",
        "token_endpoint": "https://www.linkedin.com/oauth/v2/accessToken",
        "scopes": ("r_ads", "rw_ads"),
    },
    "twitter": {
        "authorization_endpoint": "https://twitter.com/i/oauth2/authorize",
        "token_endpoint": "https://api.twitter.com/2/oauth2/token",
        "scopes": ("tweet.read", "tweet.write", "users.read", "offline.access"),
        "client_auth_method": CLIENT_SECRET_BASIC,
    },
    "tiktok": {
        "authorization_endpoint": "https://business-api.tiktok.com/open_api/v1.3/oauth2/authorize/",
        "token_endpoint": "https://business-api.tiktok.com/open_api/v1.3/oauth2/access_token/",
        "scopes": ("user.info.basic", "video.list"),
    },
    "quickbooks": {
        "authorization_endpoint": "https://appcenter.intuit.com/connect/oauth2",
        "token_endpoint": "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        "scopes": ("com.intuit.quickbooks.accounting",),
        "client_auth_method": CLIENT_SECRET_BASIC,
    },
    "xero": {
        "authorization_endpoint": "https://login.xero.com/identity/connect/authorize",
        "token_endpoint": "https://identity.xero.com/connect/token",
        "scopes": ("offline_access", "accounting.transactions", "accounting.contacts"),
        "client_auth_method": CLIENT_SECRET_BASIC,
    },
}


def _is_http_url(value: str) -> bool:
    return value.startswith("https://") or value.startswith("http://")


@dataclass(frozen=True)
class ProviderConfig:
    """
    Client configuration for one third-party OAuth provider.

    One instance per integration type, created at startup and never mutated.

    Attributes:
        client_id: Client ID issued by the provider
        client_secret: Client secret issued by the provider
        redirect_uri: Callback URL registered with the provider (matched exactly)
        authorization_endpoint: Provider authorization URL (browser redirect)
        token_endpoint: Provider token URL (server-to-server POST)
        scopes: Requested scopes, in order
        key: Provider key used for registry lookup (e.g. "google")
        client_auth_method: "client_secret_post" (credentials in the form body)
            or "client_secret_basic" (HTTP Basic header)
        extra_authorize_params: Provider-specific authorization query parameters
    """

    client_id: str
    client_secret: str
    redirect_uri: str
    authorization_endpoint: str
    token_endpoint: str
    scopes: Tuple[str, ...] = ()
    key: str = "default"
    client_auth_method: str = CLIENT_SECRET_POST
    extra_authorize_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.client_id:
            raise ConfigurationError(f"[{self.key}] client_id cannot be empty")

        if not self.client_secret:
            raise ConfigurationError(f"[{self.key}] client_secret cannot be empty")

        if not self.redirect_uri:
            raise ConfigurationError(f"[{self.key}] redirect_uri cannot be empty")

        for name in ("authorization_endpoint", "token_endpoint"):
            if not _is_http_url(getattr(self, name)):
                raise ConfigurationError(
                    f"[{self.key}] {name} must be an http(s) URL, "
                    f"got {getattr(self, name)!r}"
                )

        if self.client_auth_method not in (CLIENT_SECRET_POST, CLIENT_SECRET_BASIC):
            raise ConfigurationError(
                f"[{self.key}] unsupported client_auth_method {self.client_auth_method!r}"
            )

        if isinstance(self.scopes, str):
            raise ConfigurationError(
                f"[{self.key}] scopes must be a sequence of strings, not a string"
            )

        # Lists become tuples; the instance is frozen
        object.__setattr__(self, "scopes", tuple(self.scopes))
        object.__setattr__(
            self, "extra_authorize_params", dict(self.extra_authorize_params)
        )

    @classmethod
    def from_env(cls, key: str) -> "ProviderConfig":
        """
        Load a provider configuration from environment variables.

        Required environment variables (KEY is the upper-cased provider key):
            KEY_CLIENT_ID: Client ID
            KEY_CLIENT_SECRET: Client secret
            KEY_REDIRECT_URI: Registered callback URL

        Optional environment variables (defaults from PROVIDER_CATALOG):
            KEY_AUTHORIZATION_URL: Authorization endpoint
            KEY_TOKEN_URL: Token endpoint
            KEY_SCOPES: Space- or comma-separated scopes
            KEY_CLIENT_AUTH_METHOD: client_secret_post or client_secret_basic

        Args:
            key: Provider key (e.g. "google")

        Returns:
            ProviderConfig instance

        Raises:
            ConfigurationError: If required variables are missing
        """
        prefix = key.upper().replace("-", "_")
        defaults = PROVIDER_CATALOG.get(key.lower(), {})

        client_id = os.environ.get(f"{prefix}_CLIENT_ID")
        client_secret = os.environ.get(f"{prefix}_CLIENT_SECRET")
        redirect_uri = os.environ.get(f"{prefix}_REDIRECT_URI")

        if not client_id or not client_secret or not redirect_uri:
            raise ConfigurationError(
                f"Missing OAuth credentials for provider '{key}'. Set environment variables:\n"
                f"  {prefix}_CLIENT_ID=your_client_id\n"
                f"  {prefix}_CLIENT_SECRET=your_client_secret\n"
                f"  {prefix}_REDIRECT_URI=https://your.app/oauth/callback"
            )

        authorization_endpoint = os.environ.get(
            f"{prefix}_AUTHORIZATION_URL", defaults.get("authorization_endpoint", "")
        )
        token_endpoint = os.environ.get(
            f"{prefix}_TOKEN_URL", defaults.get("token_endpoint", "")
        )

        raw_scopes = os.environ.get(f"{prefix}_SCOPES")
        if raw_scopes is not None:
            scopes = tuple(s for s in raw_scopes.replace(",", " ").split() if s)
        else:
            scopes = tuple(defaults.get("scopes", ()))

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=redirect_uri,
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            scopes=scopes,
            key=key,
            client_auth_method=os.environ.get(
                f"{prefix}_CLIENT_AUTH_METHOD",
                defaults.get("client_auth_method", CLIENT_SECRET_POST),
            ),
            extra_authorize_params=defaults.get("extra_authorize_params", {}),
        )


class ProviderRegistry:
    """Read-only lookup of provider configurations by key."""

    def __init__(self, providers: Iterable[ProviderConfig] = ()):
        self._providers: Dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.key in self._providers:
                raise ConfigurationError(f"Duplicate provider key: {provider.key}")
            self._providers[provider.key] = provider

    def get(self, key: Optional[str]) -> ProviderConfig:
        """
        Look up a provider.

        When ``key`` is None and exactly one provider is registered, that
        provider is returned.

        Raises:
            ConfigurationError: If the provider is not registered
        """
        if key is None and len(self._providers) == 1:
            return next(iter(self._providers.values()))

        try:
            return self._providers[key]
        except KeyError:
            raise ConfigurationError(f"Unknown OAuth provider: {key!r}") from None

    def keys(self) -> Sequence[str]:
        return list(self._providers)

    def __contains__(self, key: object) -> bool:
        return key in self._providers

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)

    @classmethod
    def from_env(cls, keys: Iterable[str]) -> "ProviderRegistry":
        """Load every listed provider with ProviderConfig.from_env."""
        return cls(ProviderConfig.from_env(key) for key in keys)


class OAuthSettings(BaseSettings):
    """
    Process-wide OAuth settings.

    Attributes:
        state_secret: Secret used to sign the state parameter
        state_max_age_seconds: Maximum age of a state before it is rejected
        token_request_timeout: Timeout in seconds for token endpoint calls
        refresh_buffer_seconds: Refresh tokens this many seconds before expiry
        token_file: Path of the JSON token store
        providers: Comma-separated provider keys to load from the environment
        host: Callback server host address
        port: Callback server port
    """

    state_secret: str = ""
    state_max_age_seconds: int = 600
    token_request_timeout: float = 15.0
    refresh_buffer_seconds: int = 300
    token_file: str = "~/.integration_oauth/tokens.json"
    providers: str = ""
    host: str = "127.0.0.1"
    port: int = 8080

    class Config:
        """Pydantic configuration."""
        env_prefix = "INTEGRATION_OAUTH_"

    @property
    def signing_secret(self) -> bytes:
        """
        Signing secret as bytes.

        Raises:
            ConfigurationError: If no secret is configured
        """
        if not self.state_secret:
            raise ConfigurationError(
                "Missing state signing secret. Set INTEGRATION_OAUTH_STATE_SECRET "
                "to a long random value (e.g. `python -c 'import secrets; "
                "print(secrets.token_urlsafe(48))'`)."
            )
        return self.state_secret.encode("utf-8")

    @property
    def provider_keys(self) -> Tuple[str, ...]:
        return tuple(k.strip() for k in self.providers.split(",") if k.strip())

    @property
    def token_path(self) -> str:
        return os.path.expanduser(self.token_file)

    def load_providers(self) -> ProviderRegistry:
        """Build the provider registry for the configured provider keys."""
        if not self.provider_keys:
            raise ConfigurationError(
                "No OAuth providers configured. Set INTEGRATION_OAUTH_PROVIDERS "
                "(e.g. INTEGRATION_OAUTH_PROVIDERS=google,xero)."
            )
        registry = ProviderRegistry.from_env(self.provider_keys)
        logger.debug(f"Loaded OAuth providers: {', '.join(registry.keys())}")
        return registry
