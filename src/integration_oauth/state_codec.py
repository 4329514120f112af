"""
Signed OAuth state parameter.

The state value travels through the provider redirect and back, so no
server-side session is needed between the authorization request and the
callback. Everything the callback needs (who started the flow and for which
integration) is carried in the state itself and protected by an HMAC.

Wire format (all segments URL-safe, no padding)::

    base64url(payload) "." issued_at "." base64url(nonce) "." base64url(signature)

where ``payload`` is the canonical JSON of the claims and ``signature`` is
HMAC-SHA256 over ``payload "." issued_at "." nonce``.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from .exceptions import (
    ConfigurationError,
    StateDecodeError,
    StateVerificationError,
    VerificationFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(minutes=10)

# States stamped this far in the future are still accepted (clock skew
# between instances); anything further ahead is treated as expired.
CLOCK_SKEW = timedelta(seconds=60)

NONCE_BYTES = 16
MAX_STATE_LENGTH = 4096

_B64URL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_ISSUED_AT_RE = re.compile(r"^[0-9]{1,12}$")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_nonce() -> str:
    """Return a URL-safe nonce with 16 bytes of CSPRNG entropy."""
    return secrets.token_urlsafe(NONCE_BYTES)


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(segment: str) -> bytes:
    if not _B64URL_RE.match(segment):
        raise StateDecodeError("State segment is not base64url")
    padding = "=" * ((4 - (len(segment) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((segment + padding).encode("ascii"))
    except (binascii.Error, ValueError) as e:
        raise StateDecodeError(f"State segment is not base64url: {e}") from e
    # Reject non-canonical encodings so the value round-trips byte for byte
    if _b64url_encode(raw) != segment:
        raise StateDecodeError("State segment is not canonically encoded")
    return raw


def _signing_key(secret: Union[bytes, str]) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not secret:
        raise ConfigurationError("State signing secret cannot be empty")
    return secret


@dataclass(frozen=True)
class StateClaims:
    """
    Identity context bound to one authorization attempt.

    Attributes:
        user_id: User who started the connection flow
        organization_id: Organization the connection belongs to (may be None)
        integration_id: Integration (provider/account pairing) being connected
        nonce: Random value, unique per attempt
        issued_at: When the attempt started (UTC, whole seconds)
        provider_key: Provider the state was issued for, if bound to one
    """

    user_id: str
    organization_id: Optional[str]
    integration_id: Union[int, str]
    nonce: str
    issued_at: datetime
    provider_key: Optional[str] = None

    def __post_init__(self) -> None:
        issued_at = self.issued_at
        if issued_at.tzinfo is None:
            issued_at = issued_at.replace(tzinfo=timezone.utc)
        # The wire format carries whole seconds
        issued_at = issued_at.astimezone(timezone.utc).replace(microsecond=0)
        object.__setattr__(self, "issued_at", issued_at)

    @property
    def issued_at_epoch(self) -> int:
        return int(self.issued_at.timestamp())

    def to_payload(self) -> bytes:
        """Canonical JSON encoding of the claims."""
        data = {
            "iat": self.issued_at_epoch,
            "integration_id": self.integration_id,
            "nonce": self.nonce,
            "organization_id": self.organization_id,
            "provider": self.provider_key,
            "user_id": self.user_id,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_payload(cls, payload: bytes) -> "StateClaims":
        """
        Parse claims from their canonical JSON encoding.

        Raises:
            ValueError: If the payload is not a valid claims object
        """
        data = json.loads(payload.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("claims payload is not an object")

        user_id = data.get("user_id")
        organization_id = data.get("organization_id")
        integration_id = data.get("integration_id")
        nonce = data.get("nonce")
        iat = data.get("iat")
        provider_key = data.get("provider")

        if not isinstance(user_id, str) or not user_id:
            raise ValueError("user_id missing")
        if organization_id is not None and not isinstance(organization_id, str):
            raise ValueError("organization_id must be a string")
        if isinstance(integration_id, bool) or not isinstance(integration_id, (int, str)):
            raise ValueError("integration_id missing")
        if not isinstance(nonce, str) or not nonce:
            raise ValueError("nonce missing")
        if isinstance(iat, bool) or not isinstance(iat, int) or iat < 0:
            raise ValueError("iat missing")
        if provider_key is not None and not isinstance(provider_key, str):
            raise ValueError("provider must be a string")

        return cls(
            user_id=user_id,
            organization_id=organization_id,
            integration_id=integration_id,
            nonce=nonce,
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc),
            provider_key=provider_key,
        )


def new_claims(
    user_id: str,
    organization_id: Optional[str],
    integration_id: Union[int, str],
    provider_key: Optional[str] = None,
    clock: Clock = utcnow,
    nonce_factory: Callable[[], str] = generate_nonce,
) -> StateClaims:
    """Create claims for a new authorization attempt (fresh nonce, current time)."""
    return StateClaims(
        user_id=user_id,
        organization_id=organization_id,
        integration_id=integration_id,
        nonce=nonce_factory(),
        issued_at=clock(),
        provider_key=provider_key,
    )


@dataclass(frozen=True)
class SignedStateEnvelope:
    """
    The value transmitted through the provider redirect.

    Attributes:
        payload: Canonical JSON of the claims
        issued_at: Issue time in epoch seconds (duplicated from the claims)
        nonce: Attempt nonce (duplicated from the claims)
        signature: HMAC-SHA256 over payload, issued_at and nonce
    """

    payload: bytes
    issued_at: int
    nonce: str
    signature: bytes

    def signing_input(self) -> bytes:
        return _signing_input(self.payload, self.issued_at, self.nonce)

    @property
    def encoded(self) -> str:
        """URL-safe external representation."""
        return ".".join(
            [
                _b64url_encode(self.payload),
                str(self.issued_at),
                _b64url_encode(self.nonce.encode("utf-8")),
                _b64url_encode(self.signature),
            ]
        )

    def __str__(self) -> str:
        return self.encoded


def _signing_input(payload: bytes, issued_at: int, nonce: str) -> bytes:
    return b".".join([payload, str(issued_at).encode("ascii"), nonce.encode("utf-8")])


def _mac(key: bytes, message: bytes) -> bytes:
    return hmac.new(key, message, hashlib.sha256).digest()


def encode(claims: StateClaims, secret: Union[bytes, str]) -> SignedStateEnvelope:
    """
    Sign claims into an envelope.

    Args:
        claims: Claims for this authorization attempt
        secret: Server-held signing secret

    Returns:
        SignedStateEnvelope; use ``.encoded`` for the query parameter value

    Raises:
        ConfigurationError: If the secret is empty
    """
    key = _signing_key(secret)
    payload = claims.to_payload()
    issued_at = claims.issued_at_epoch
    signature = _mac(key, _signing_input(payload, issued_at, claims.nonce))
    return SignedStateEnvelope(
        payload=payload, issued_at=issued_at, nonce=claims.nonce, signature=signature
    )


def decode(raw: str) -> SignedStateEnvelope:
    """
    Parse the external representation of an envelope.

    Never raises anything other than StateDecodeError, whatever the input.

    Args:
        raw: State value received on the callback

    Returns:
        SignedStateEnvelope (not yet verified)

    Raises:
        StateDecodeError: If the value is not a well-formed envelope
    """
    if not isinstance(raw, str) or not raw:
        raise StateDecodeError("State is empty")

    if len(raw) > MAX_STATE_LENGTH:
        raise StateDecodeError("State is too long")

    parts = raw.split(".")
    if len(parts) != 4:
        raise StateDecodeError("State does not have four segments")

    payload_part, issued_at_part, nonce_part, signature_part = parts

    if not _ISSUED_AT_RE.match(issued_at_part) or str(int(issued_at_part)) != issued_at_part:
        raise StateDecodeError("State issue time is not a canonical integer")

    payload = _b64url_decode(payload_part)
    try:
        nonce = _b64url_decode(nonce_part).decode("utf-8")
    except UnicodeDecodeError as e:
        raise StateDecodeError("State nonce is not UTF-8") from e
    signature = _b64url_decode(signature_part)

    return SignedStateEnvelope(
        payload=payload,
        issued_at=int(issued_at_part),
        nonce=nonce,
        signature=signature,
    )


def verify(
    envelope: SignedStateEnvelope,
    secret: Union[bytes, str],
    max_age: timedelta = DEFAULT_MAX_AGE,
    now: Optional[datetime] = None,
) -> StateClaims:
    """
    Check an envelope and return the claims it carries.

    Checks run in order: signature (constant-time compare), payload parse,
    envelope/payload consistency, age. A state exactly ``max_age`` old is
    still accepted.

    Args:
        envelope: Decoded envelope
        secret: Server-held signing secret
        max_age: Maximum accepted age
        now: Current time (defaults to the system clock)

    Returns:
        The original StateClaims

    Raises:
        StateVerificationError: With reason INVALID_SIGNATURE, MALFORMED or EXPIRED
    """
    key = _signing_key(secret)
    expected = _mac(key, envelope.signing_input())
    if not hmac.compare_digest(expected, envelope.signature):
        raise StateVerificationError(VerificationFailure.INVALID_SIGNATURE)

    try:
        claims = StateClaims.from_payload(envelope.payload)
    except (ValueError, OverflowError, OSError) as e:
        raise StateVerificationError(
            VerificationFailure.MALFORMED, f"State payload is malformed: {e}"
        ) from e

    if claims.issued_at_epoch != envelope.issued_at or claims.nonce != envelope.nonce:
        raise StateVerificationError(
            VerificationFailure.MALFORMED, "State envelope does not match its payload"
        )

    now = now or utcnow()
    age = now - claims.issued_at
    if age > max_age:
        raise StateVerificationError(
            VerificationFailure.EXPIRED,
            f"State expired ({int(age.total_seconds())}s old, max {int(max_age.total_seconds())}s)",
        )
    if age < -CLOCK_SKEW:
        raise StateVerificationError(
            VerificationFailure.EXPIRED, "State was issued in the future"
        )

    return claims


class StateCodec:
    """
    State codec bound to a secret, a maximum age and a clock.

    Example:
        codec = StateCodec(secret=b"...")
        raw = codec.encode(codec.new_claims("u1", "o1", 42)).encoded
        claims = codec.verify(codec.decode(raw))
    """

    def __init__(
        self,
        secret: Union[bytes, str],
        max_age: timedelta = DEFAULT_MAX_AGE,
        clock: Clock = utcnow,
        nonce_factory: Callable[[], str] = generate_nonce,
    ):
        self._secret = _signing_key(secret)
        self.max_age = max_age
        self.clock = clock
        self.nonce_factory = nonce_factory

    @property
    def secret(self) -> bytes:
        return self._secret

    def new_claims(
        self,
        user_id: str,
        organization_id: Optional[str],
        integration_id: Union[int, str],
        provider_key: Optional[str] = None,
    ) -> StateClaims:
        return new_claims(
            user_id,
            organization_id,
            integration_id,
            provider_key=provider_key,
            clock=self.clock,
            nonce_factory=self.nonce_factory,
        )

    def encode(self, claims: StateClaims) -> SignedStateEnvelope:
        return encode(claims, self._secret)

    def decode(self, raw: str) -> SignedStateEnvelope:
        return decode(raw)

    def verify(self, envelope: SignedStateEnvelope) -> StateClaims:
        return verify(envelope, self._secret, self.max_age, now=self.clock())

    def open(self, raw: str) -> StateClaims:
        """Decode and verify in one step."""
        return self.verify(self.decode(raw))
