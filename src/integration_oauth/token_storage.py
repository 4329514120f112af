"""
Token records and token storage for integration OAuth.

This module provides:
- TokenRecord: normalized result of a code exchange or refresh
- TokenStore: the persistence interface the orchestrator depends on
- FileTokenStore: JSON file implementation keyed by user/organization/integration
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

from .exceptions import TokenStorageError

logger = logging.getLogger(__name__)


@dataclass
class TokenRecord:
    """
    OAuth tokens for one connected integration.

    Attributes:
        access_token: Short-lived access token for API calls
        refresh_token: Long-lived token for obtaining new access tokens (optional)
        token_type: Token type (typically "Bearer")
        scopes: Granted OAuth scopes
        expires_in: Access token lifetime in seconds from obtained_at (None if unknown)
        obtained_at: When the tokens were issued or refreshed (UTC)
    """

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scopes: Tuple[str, ...] = ()
    expires_in: Optional[int] = None
    obtained_at: datetime = None  # type: ignore[assignment]

    def __post_init__(self) -> None:
        if self.obtained_at is None:
            self.obtained_at = datetime.now(timezone.utc)
        elif self.obtained_at.tzinfo is None:
            self.obtained_at = self.obtained_at.replace(tzinfo=timezone.utc)
        self.scopes = tuple(self.scopes)

    @property
    def expires_at(self) -> Optional[datetime]:
        """
        Calculate expiration datetime.

        Returns:
            Datetime when the access token expires, or None if the provider
            did not say
        """
        if self.expires_in is None:
            return None
        return self.obtained_at + timedelta(seconds=self.expires_in)

    @property
    def is_expired(self) -> bool:
        """True if the access token has expired (never, if expiry is unknown)."""
        expires_at = self.expires_at
        return expires_at is not None and datetime.now(timezone.utc) >= expires_at

    def expires_within(self, seconds: int) -> bool:
        """
        Check if token expires within given seconds.

        Useful for proactive token refresh (e.g., refresh if expires within 5 minutes).

        Args:
            seconds: Number of seconds to check

        Returns:
            True if token will expire within the specified time, False otherwise
        """
        expires_at = self.expires_at
        if expires_at is None:
            return False
        buffer_time = datetime.now(timezone.utc) + timedelta(seconds=seconds)
        return buffer_time >= expires_at

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary representation of the record
        """
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "scopes": list(self.scopes),
            "expires_in": self.expires_in,
            "obtained_at": self.obtained_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        """
        Create TokenRecord from dictionary.

        Raises:
            KeyError: If access_token or obtained_at are missing
            ValueError: If obtained_at is not an ISO timestamp
        """
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            scopes=tuple(data.get("scopes", ())),
            expires_in=data.get("expires_in"),
            obtained_at=datetime.fromisoformat(data["obtained_at"]),
        )

    def __repr__(self) -> str:
        # Keep credentials out of logs and tracebacks
        return (
            f"TokenRecord(token_type={self.token_type!r}, scopes={self.scopes!r}, "
            f"expires_in={self.expires_in!r}, obtained_at={self.obtained_at.isoformat()!r}, "
            f"has_refresh_token={self.refresh_token is not None})"
        )


class TokenStore(Protocol):
    """Persistence for connected-integration tokens."""

    def save(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
        tokens: TokenRecord,
    ) -> None:
        """
        Upsert tokens for the user/organization/integration.

        Raises:
            TokenStorageError: If the tokens could not be saved
        """
        ...

    def load(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> Optional[TokenRecord]:
        """Return stored tokens, or None if there are none."""
        ...

    def delete(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> bool:
        """Remove stored tokens; return False if there were none."""
        ...


def connection_key(
    user_id: str, organization_id: Optional[str], integration_id: Union[int, str]
) -> str:
    """
    Storage key of one connection.

    JSON-encoded so that no two distinct (user, organization, integration)
    triples share a key, whatever characters the identifiers contain.
    """
    return json.dumps(
        [user_id, organization_id, str(integration_id)], separators=(",", ":")
    )


class FileTokenStore:
    """
    File-based token storage (plaintext JSON).

    All connections share one file, keyed by user, organization and
    integration. The file is written with user-only permissions (600).
    Writes within one process are serialized; cross-process atomicity is
    the deployment's concern.
    """

    def __init__(self, token_file: Union[str, Path]):
        """
        Initialize token storage.

        Args:
            token_file: Path to token storage file
        """
        self.token_file = Path(token_file).expanduser()
        self._lock = threading.Lock()
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        """Create parent directory if needed."""
        self.token_file.parent.mkdir(parents=True, exist_ok=True)

    def _set_secure_permissions(self) -> None:
        """Set file permissions to user-only read/write (600)."""
        try:
            self.token_file.chmod(0o600)
            logger.debug(f"Set secure permissions (600) on {self.token_file}")
        except (OSError, PermissionError) as e:
            logger.warning(f"Could not set secure permissions: {e}")

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        if not self.token_file.exists():
            return {}

        try:
            with open(self.token_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (ValueError, RecursionError) as e:
            logger.warning(
                f"Invalid token file at {self.token_file}, "
                f"connections will need to be re-authorized: {e}"
            )
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Unexpected token file layout at {self.token_file}")
            return {}
        return data

    def _write_all(self, data: Dict[str, Dict[str, Any]]) -> None:
        tmp_file = self.token_file.with_suffix(self.token_file.suffix + ".tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        tmp_file.chmod(0o600)
        tmp_file.replace(self.token_file)
        self._set_secure_permissions()

    def save(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
        tokens: TokenRecord,
    ) -> None:
        """
        Save tokens for one connection.

        Raises:
            TokenStorageError: If save operation fails
        """
        key = connection_key(user_id, organization_id, integration_id)
        with self._lock:
            try:
                data = self._read_all()
                data[key] = tokens.to_dict()
                self._write_all(data)
            except (IOError, OSError) as e:
                logger.error(f"Failed to save tokens for {key}: {e}")
                raise TokenStorageError(f"Failed to save tokens: {e}") from e

        logger.info(f"Tokens saved for connection {key}")

    def load(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> Optional[TokenRecord]:
        """
        Load tokens for one connection.

        Returns:
            TokenRecord if stored and valid, None otherwise

        Notes:
            - Returns None if nothing is stored (normal before first connect)
            - Returns None if the entry is corrupted (logs warning)
        """
        key = connection_key(user_id, organization_id, integration_id)
        try:
            with self._lock:
                entry = self._read_all().get(key)
        except (IOError, OSError) as e:
            logger.warning(f"Could not read token file: {e}")
            return None

        if entry is None:
            logger.debug(f"No tokens stored for {key}")
            return None

        try:
            return TokenRecord.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid token entry for {key}, will need re-authorization: {e}")
            return None

    def delete(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
    ) -> bool:
        """
        Delete tokens for one connection.

        Returns:
            True if an entry was deleted, False if none existed

        Raises:
            TokenStorageError: If the file could not be rewritten
        """
        key = connection_key(user_id, organization_id, integration_id)
        with self._lock:
            try:
                data = self._read_all()
                if key not in data:
                    logger.debug(f"No tokens stored for {key}")
                    return False
                del data[key]
                self._write_all(data)
            except (IOError, OSError) as e:
                logger.error(f"Failed to delete tokens for {key}: {e}")
                raise TokenStorageError(f"Failed to delete tokens: {e}") from e

        logger.info(f"Tokens deleted for connection {key}")
        return True

    def connections(self) -> List[Tuple[str, Optional[str], str]]:
        """(user_id, organization_id, integration_id) of every stored connection."""
        with self._lock:
            keys = sorted(self._read_all())
        connections = []
        for key in keys:
            try:
                user_id, organization_id, integration_id = json.loads(key)
            except (ValueError, TypeError):
                logger.warning(f"Skipping unrecognized token entry {key!r}")
                continue
            connections.append((user_id, organization_id, integration_id))
        return connections
