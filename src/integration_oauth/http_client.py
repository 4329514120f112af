"""
Network requester used to reach provider token endpoints.

The token exchanger only depends on the NetworkRequester protocol, so tests
and hosts with their own HTTP stack can supply a different implementation.
"""

import logging
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol

import requests

from .exceptions import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0


@dataclass
class HttpResponse:
    """Status and body of a completed HTTP request."""

    status_code: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class NetworkRequester(Protocol):
    """Capability to POST a form-encoded body."""

    def post(
        self,
        url: str,
        data: Mapping[str, str],
        headers: Mapping[str, str],
        timeout: float,
    ) -> HttpResponse:
        """
        Send the request.

        Raises:
            TransportError: If no HTTP response was received
        """
        ...


class RequestsRequester:
    """NetworkRequester backed by the requests library."""

    def __init__(self, session: Optional[requests.Session] = None):
        """
        Initialize requester.

        Args:
            session: Session to reuse connections (module-level requests.post if None)
        """
        self.session = session

    def post(
        self,
        url: str,
        data: Mapping[str, str],
        headers: Mapping[str, str],
        timeout: float = DEFAULT_TIMEOUT,
    ) -> HttpResponse:
        poster = self.session.post if self.session is not None else requests.post
        try:
            response = poster(
                url,
                data=dict(data),
                headers=dict(headers),
                timeout=timeout,
                allow_redirects=False,
            )
        except requests.Timeout as e:
            logger.warning(f"Timed out after {timeout}s calling {url}")
            raise TransportError(f"Timed out after {timeout}s calling {url}") from e
        except requests.RequestException as e:
            logger.warning(f"Network error calling {url}: {e}")
            raise TransportError(f"Network error calling {url}: {e}") from e

        return HttpResponse(
            status_code=response.status_code,
            text=response.text,
        )
