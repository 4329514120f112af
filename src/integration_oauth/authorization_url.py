"""
Authorization URL builder.

Builds the URL the user's browser is redirected to in order to grant the
integration access at the provider.
"""

import logging
from typing import List, Tuple, Union
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from .config import ProviderConfig
from .state_codec import StateClaims, encode

logger = logging.getLogger(__name__)


def build_authorization_url(
    config: ProviderConfig, claims: StateClaims, secret: Union[bytes, str]
) -> str:
    """
    Generate the provider authorization URL.

    The ``scope`` parameter is omitted when no scopes are configured so the
    provider applies its default scope. ``redirect_uri`` is sent exactly as
    configured.

    Args:
        config: Provider configuration
        claims: Claims for this authorization attempt
        secret: State signing secret

    Returns:
        Complete authorization URL with query parameters
    """
    state = encode(claims, secret).encoded

    params: List[Tuple[str, str]] = [
        ("client_id", config.client_id),
        ("redirect_uri", config.redirect_uri),
        ("response_type", "code"),
    ]
    if config.scopes:
        params.append(("scope", " ".join(config.scopes)))
    params.append(("state", state))

    reserved = {name for name, _ in params}
    params.extend(
        (name, value)
        for name, value in config.extra_authorize_params.items()
        if name not in reserved
    )

    scheme, netloc, path, query, fragment = urlsplit(config.authorization_endpoint)
    existing = parse_qsl(query, keep_blank_values=True)
    query = urlencode(existing + params, quote_via=quote)

    url = urlunsplit((scheme, netloc, path, query, fragment))
    logger.debug(
        f"Generated authorization URL for provider '{config.key}' "
        f"(integration {claims.integration_id})"
    )
    return url
