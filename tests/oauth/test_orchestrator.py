"""Tests for the callback orchestrator."""

import logging
from datetime import datetime, timedelta, timezone
from unittest import mock
from urllib.parse import parse_qs, urlsplit

import pytest

from integration_oauth.config import ProviderConfig, ProviderRegistry
from integration_oauth.exceptions import (
    ConfigurationError,
    TokenNotAvailableError,
    TokenStorageError,
)
from integration_oauth.http_client import HttpResponse
from integration_oauth.orchestrator import (
    CallbackOrchestrator,
    CallbackResult,
    FailureReason,
    InMemoryNonceGuard,
    LoggingObserver,
)
from integration_oauth.state_codec import StateClaims, encode
from integration_oauth.token_exchanger import TokenExchanger
from integration_oauth.token_storage import TokenRecord

from .conftest import FIXED_NOW, SECRET, FakeRequester, json_response

TOKEN_BODY = {
    "access_token": "at1",
    "refresh_token": "rt1",
    "expires_in": 3600,
    "token_type": "Bearer",
}


class RecordingObserver:
    def __init__(self):
        self.outcomes = []

    def record(self, outcome):
        self.outcomes.append(outcome)


@pytest.fixture
def observer():
    return RecordingObserver()


@pytest.fixture
def make_orchestrator(registry, token_store, observer):
    def factory(requester=None, store=None, **kwargs):
        requester = requester or FakeRequester([json_response(TOKEN_BODY)])
        orchestrator = CallbackOrchestrator(
            providers=kwargs.pop("providers", registry),
            secret=SECRET,
            token_store=store or token_store,
            exchanger=TokenExchanger(requester=requester, clock=lambda: FIXED_NOW),
            observer=observer,
            clock=kwargs.pop("clock", lambda: FIXED_NOW),
            **kwargs,
        )
        orchestrator.requester = requester
        return orchestrator

    return factory


def _state(provider_key="acme", issued_at=FIXED_NOW, nonce="n1"):
    claims = StateClaims(
        user_id="u1",
        organization_id="o1",
        integration_id=42,
        nonce=nonce,
        issued_at=issued_at,
        provider_key=provider_key,
    )
    return claims, encode(claims, SECRET).encoded


class TestHandleCallback:
    """Tests for CallbackOrchestrator.handle_callback."""

    def test_success_persists_tokens(self, make_orchestrator, token_store, observer):
        """A valid callback exchanges the code and saves the tokens."""
        orchestrator = make_orchestrator()
        claims, state = _state()

        result = orchestrator.handle_callback("good-code", state)

        assert result.success is True
        assert result.claims == claims
        assert result.tokens.access_token == "at1"
        assert result.provider_key == "acme"
        assert token_store.load("u1", "o1", 42).access_token == "at1"
        assert orchestrator.requester.calls[0]["data"]["code"] == "good-code"
        assert observer.outcomes[-1].success is True
        assert observer.outcomes[-1].operation == "callback"
        assert observer.outcomes[-1].integration_id == 42

    def test_garbage_state_makes_no_network_call(self, make_orchestrator, observer):
        """An undecodable state fails with INVALID_STATE before any request."""
        orchestrator = make_orchestrator()

        result = orchestrator.handle_callback("bad-code", "garbage-state")

        assert result.success is False
        assert result.failure is FailureReason.INVALID_STATE
        assert orchestrator.requester.calls == []
        assert observer.outcomes[-1].reason is FailureReason.INVALID_STATE

    def test_missing_state(self, make_orchestrator):
        """A missing state is INVALID_STATE."""
        orchestrator = make_orchestrator()

        result = orchestrator.handle_callback("code", None)

        assert result.failure is FailureReason.INVALID_STATE
        assert orchestrator.requester.calls == []

    def test_forged_state_is_invalid(self, make_orchestrator):
        """A state signed with another secret is INVALID_STATE."""
        orchestrator = make_orchestrator()
        claims = StateClaims("u1", "o1", 42, "n1", FIXED_NOW, provider_key="acme")
        state = encode(claims, b"attacker-secret").encoded

        result = orchestrator.handle_callback("code", state)

        assert result.failure is FailureReason.INVALID_STATE
        assert orchestrator.requester.calls == []

    def test_expired_state_is_invalid_without_detail(self, make_orchestrator):
        """Expired state is INVALID_STATE and the detail does not say why."""
        orchestrator = make_orchestrator()
        _, state = _state(issued_at=FIXED_NOW - timedelta(minutes=11))

        result = orchestrator.handle_callback("code", state)

        assert result.failure is FailureReason.INVALID_STATE
        assert "expired" not in (result.detail or "").lower()
        assert "signature" not in (result.detail or "").lower()
        assert "restart the connection flow" in result.user_message

    def test_provider_error_is_exchange_failed(self, make_orchestrator, token_store):
        """A provider rejection is EXCHANGE_FAILED and nothing is stored."""
        requester = FakeRequester(
            [json_response({"error": "invalid_grant", "error_description": "Bad code"}, 400)]
        )
        orchestrator = make_orchestrator(requester=requester)
        claims, state = _state()

        result = orchestrator.handle_callback("used-code", state)

        assert result.failure is FailureReason.EXCHANGE_FAILED
        assert result.provider_error == "invalid_grant"
        assert "invalid_grant" in result.detail
        assert result.claims == claims
        assert token_store.load("u1", "o1", 42) is None
        assert "used-code" not in result.user_message
        assert "(error: invalid_grant)" in result.user_message

    def test_network_error(self, make_orchestrator, transport_error):
        """Transport failures are NETWORK_ERROR."""
        orchestrator = make_orchestrator(requester=FakeRequester(error=transport_error))
        _, state = _state()

        result = orchestrator.handle_callback("code", state)

        assert result.failure is FailureReason.NETWORK_ERROR
        assert result.is_retryable is True

    def test_missing_code(self, make_orchestrator):
        """A valid state without a code fails without a network call."""
        orchestrator = make_orchestrator()
        _, state = _state()

        result = orchestrator.handle_callback("", state)

        assert result.failure is FailureReason.EXCHANGE_FAILED
        assert orchestrator.requester.calls == []

    def test_persistence_failure_keeps_tokens(self, make_orchestrator, observer):
        """A storage failure is PERSISTENCE_FAILED and still returns the tokens."""
        store = mock.Mock()
        store.save.side_effect = TokenStorageError("disk full")
        orchestrator = make_orchestrator(store=store)
        claims, state = _state()

        result = orchestrator.handle_callback("code", state)

        assert result.success is False
        assert result.failure is FailureReason.PERSISTENCE_FAILED
        assert result.tokens.access_token == "at1"
        assert result.claims == claims
        store.save.assert_called_once_with("u1", "o1", 42, result.tokens)
        assert observer.outcomes[-1].reason is FailureReason.PERSISTENCE_FAILED

    def test_unknown_provider_in_state_raises(self, make_orchestrator):
        """A signed state naming an unconfigured provider is a configuration error."""
        orchestrator = make_orchestrator()
        _, state = _state(provider_key="nope")

        with pytest.raises(ConfigurationError):
            orchestrator.handle_callback("code", state)

    def test_state_without_provider_uses_single_provider(self, make_orchestrator):
        """With one provider configured, a state without provider key is accepted."""
        orchestrator = make_orchestrator()
        _, state = _state(provider_key=None)

        result = orchestrator.handle_callback("code", state)

        assert result.success is True
        assert result.provider_key == "acme"

    def test_replay_rejected_with_nonce_guard(self, make_orchestrator):
        """With a nonce guard, the same state is accepted only once."""
        requester = FakeRequester([json_response(TOKEN_BODY), json_response(TOKEN_BODY)])
        orchestrator = make_orchestrator(
            requester=requester, nonce_guard=InMemoryNonceGuard(clock=lambda: FIXED_NOW)
        )
        _, state = _state()

        first = orchestrator.handle_callback("code-1", state)
        second = orchestrator.handle_callback("code-2", state)

        assert first.success is True
        assert second.failure is FailureReason.INVALID_STATE
        assert len(requester.calls) == 1

    def test_without_nonce_guard_replay_reaches_provider(self, make_orchestrator):
        """Without a guard, replay protection rests on the provider and expiry."""
        requester = FakeRequester(
            [json_response(TOKEN_BODY), json_response({"error": "invalid_grant"}, 400)]
        )
        orchestrator = make_orchestrator(requester=requester)
        _, state = _state()

        assert orchestrator.handle_callback("code", state).success is True
        assert (
            orchestrator.handle_callback("code", state).failure
            is FailureReason.EXCHANGE_FAILED
        )


    def test_deeply_nested_token_response(self, make_orchestrator, token_store):
        """A token response too nested to decode is EXCHANGE_FAILED."""
        requester = FakeRequester([HttpResponse(200, "[" * 200000 + "]" * 200000)])
        orchestrator = make_orchestrator(requester=requester)
        _, state = _state()

        result = orchestrator.handle_callback("code", state)

        assert result.failure is FailureReason.EXCHANGE_FAILED
        assert token_store.load("u1", "o1", 42) is None

    def test_undecodable_token_file_is_replaced(self, make_orchestrator, token_store):
        """A token file that is not UTF-8 does not break the callback."""
        token_store.token_file.write_bytes(b"\xff\xfe\x00garbage")
        orchestrator = make_orchestrator()
        _, state = _state()

        result = orchestrator.handle_callback("code", state)

        assert result.success is True
        assert token_store.load("u1", "o1", 42).access_token == "at1"

    def test_state_of_another_user_is_rejected(self, make_orchestrator, token_store):
        """A state issued to one user cannot be finished by another."""
        orchestrator = make_orchestrator()
        _, state = _state()

        result = orchestrator.handle_callback("code", state, expected_user_id="victim")

        assert result.failure is FailureReason.INVALID_STATE
        assert orchestrator.requester.calls == []
        assert token_store.load("u1", "o1", 42) is None
        assert "restart the connection flow" in result.user_message

    def test_state_of_same_user_is_accepted(self, make_orchestrator):
        """The expected user matches the user the state was issued to."""
        orchestrator = make_orchestrator()
        _, state = _state()

        result = orchestrator.handle_callback("code", state, expected_user_id="u1")

        assert result.success is True


class TestDisconnect:
    """Tests for CallbackOrchestrator.disconnect."""

    def test_disconnect_deletes_tokens(self, make_orchestrator, token_store, observer):
        """disconnect removes the stored tokens and reports the outcome."""
        token_store.save("u1", "o1", 42, TokenRecord(access_token="at1"))
        orchestrator = make_orchestrator()

        assert orchestrator.disconnect("u1", "o1", 42) is True
        assert token_store.load("u1", "o1", 42) is None
        assert observer.outcomes[-1].operation == "disconnect"
        assert observer.outcomes[-1].success is True
        assert observer.outcomes[-1].integration_id == 42

    def test_disconnect_not_connected(self, make_orchestrator, observer):
        """Disconnecting an unknown connection returns False."""
        assert make_orchestrator().disconnect("u1", "o1", 42) is False
        assert observer.outcomes[-1].success is False
        assert observer.outcomes[-1].reason is None

    def test_disconnect_leaves_other_connections(self, make_orchestrator, token_store):
        """Only the given connection is removed."""
        token_store.save("u1", "o1", 42, TokenRecord(access_token="at1"))
        token_store.save("u1", "o1", 43, TokenRecord(access_token="at2"))

        make_orchestrator().disconnect("u1", "o1", 42)

        assert token_store.load("u1", "o1", 43).access_token == "at2"

    def test_disconnect_storage_failure(self, make_orchestrator, observer):
        """Storage failures are reported and re-raised."""
        store = mock.Mock()
        store.delete.side_effect = TokenStorageError("read-only file system")
        orchestrator = make_orchestrator(store=store)

        with pytest.raises(TokenStorageError):
            orchestrator.disconnect("u1", "o1", 42)

        assert observer.outcomes[-1].reason is FailureReason.PERSISTENCE_FAILED


class TestRefreshToken:
    """Tests for CallbackOrchestrator.refresh_token."""

    def test_refresh_success(self, make_orchestrator, observer):
        """refresh_token returns new tokens."""
        requester = FakeRequester([json_response({"access_token": "at2", "expires_in": 60})])
        orchestrator = make_orchestrator(requester=requester)

        result = orchestrator.refresh_token("acme", "rt1")

        assert result.success is True
        assert result.tokens.access_token == "at2"
        assert result.tokens.refresh_token == "rt1"
        assert result.claims is None
        assert observer.outcomes[-1].operation == "refresh"

    def test_refresh_failure(self, make_orchestrator):
        """A provider rejection is EXCHANGE_FAILED."""
        requester = FakeRequester([json_response({"error": "invalid_grant"}, 400)])
        orchestrator = make_orchestrator(requester=requester)

        result = orchestrator.refresh_token("acme", "revoked")

        assert result.failure is FailureReason.EXCHANGE_FAILED
        assert result.is_retryable is False

    def test_refresh_unknown_provider(self, make_orchestrator):
        """An unknown provider key raises ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Unknown OAuth provider"):
            make_orchestrator().refresh_token("missing", "rt1")


class TestAuthorizationUrl:
    """Tests for CallbackOrchestrator.authorization_url."""

    def test_url_state_round_trips_through_callback(self, make_orchestrator):
        """A state issued by authorization_url is accepted by handle_callback."""
        orchestrator = make_orchestrator()

        url = orchestrator.authorization_url("acme", "u1", "o1", 42)
        state = parse_qs(urlsplit(url).query)["state"][0]
        result = orchestrator.handle_callback("code", state)

        assert url.startswith("https://p/auth?")
        assert result.success is True
        assert result.claims.provider_key == "acme"
        assert result.claims.user_id == "u1"

    def test_each_url_has_a_fresh_nonce(self, make_orchestrator):
        """Two authorization URLs carry different states."""
        orchestrator = make_orchestrator()

        first = orchestrator.authorization_url("acme", "u1", "o1", 42)
        second = orchestrator.authorization_url("acme", "u1", "o1", 42)

        assert first != second

    def test_callback_routes_to_provider_in_state(self, token_store, observer):
        """With several providers, the state selects the provider."""
        other = ProviderConfig(
            client_id="other-id",
            client_secret="other-secret",
            redirect_uri="https://app/cb",
            authorization_endpoint="https://q/auth",
            token_endpoint="https://q/token",
            key="other",
        )
        acme = ProviderConfig(
            client_id="cid",
            client_secret="csecret",
            redirect_uri="https://app/cb",
            authorization_endpoint="https://p/auth",
            token_endpoint="https://p/token",
            key="acme",
        )
        requester = FakeRequester([json_response(TOKEN_BODY)])
        orchestrator = CallbackOrchestrator(
            providers=ProviderRegistry([acme, other]),
            secret=SECRET,
            token_store=token_store,
            exchanger=TokenExchanger(requester=requester),
            observer=observer,
            clock=lambda: FIXED_NOW,
        )

        url = orchestrator.authorization_url("other", "u1", "o1", 42)
        state = parse_qs(urlsplit(url).query)["state"][0]
        orchestrator.handle_callback("code", state)

        assert requester.calls[0]["url"] == "https://q/token"
        assert requester.calls[0]["data"]["client_id"] == "other-id"


class TestGetValidAccessToken:
    """Tests for CallbackOrchestrator.get_valid_access_token."""

    def _store(self, token_store, **kwargs):
        token = TokenRecord(
            access_token="current",
            refresh_token=kwargs.pop("refresh_token", "rt1"),
            expires_in=kwargs.pop("expires_in", 3600),
            obtained_at=kwargs.pop("obtained_at", datetime.now(timezone.utc)),
        )
        token_store.save("u1", "o1", 42, token)
        return token

    def test_returns_current_token_when_fresh(self, make_orchestrator, token_store):
        """A fresh token is returned without refreshing."""
        orchestrator = make_orchestrator()
        self._store(token_store)

        assert orchestrator.get_valid_access_token("acme", "u1", "o1", 42) == "current"
        assert orchestrator.requester.calls == []

    def test_refreshes_and_saves_expiring_token(self, make_orchestrator, token_store):
        """A token expiring within the buffer is refreshed and saved."""
        requester = FakeRequester([json_response({"access_token": "renewed", "expires_in": 3600})])
        orchestrator = make_orchestrator(requester=requester)
        self._store(token_store, obtained_at=datetime.now(timezone.utc) - timedelta(minutes=58))

        token = orchestrator.get_valid_access_token("acme", "u1", "o1", 42)

        assert token == "renewed"
        stored = token_store.load("u1", "o1", 42)
        assert stored.access_token == "renewed"
        assert stored.refresh_token == "rt1"

    def test_no_tokens_raises(self, make_orchestrator):
        """Nothing stored raises TokenNotAvailableError."""
        with pytest.raises(TokenNotAvailableError):
            make_orchestrator().get_valid_access_token("acme", "u1", "o1", 42)

    def test_expired_without_refresh_token_raises(self, make_orchestrator, token_store):
        """An expired token without refresh token requires reconnecting."""
        orchestrator = make_orchestrator()
        self._store(
            token_store,
            refresh_token=None,
            obtained_at=datetime.now(timezone.utc) - timedelta(hours=2),
        )

        with pytest.raises(TokenNotAvailableError, match="Reconnect required"):
            orchestrator.get_valid_access_token("acme", "u1", "o1", 42)

    def test_failed_refresh_of_expired_token_raises(self, make_orchestrator, token_store):
        """An expired token whose refresh fails raises TokenNotAvailableError."""
        requester = FakeRequester([json_response({"error": "invalid_grant"}, 400)])
        orchestrator = make_orchestrator(requester=requester)
        self._store(token_store, obtained_at=datetime.now(timezone.utc) - timedelta(hours=2))

        with pytest.raises(TokenNotAvailableError):
            orchestrator.get_valid_access_token("acme", "u1", "o1", 42)

    def test_failed_refresh_of_valid_token_returns_current(self, make_orchestrator, token_store):
        """A still-valid token is used when its early refresh fails."""
        requester = FakeRequester([json_response({"error": "server_error"}, 500)])
        orchestrator = make_orchestrator(requester=requester)
        self._store(token_store, obtained_at=datetime.now(timezone.utc) - timedelta(minutes=58))

        assert orchestrator.get_valid_access_token("acme", "u1", "o1", 42) == "current"


class TestCallbackResult:
    """Tests for CallbackResult and observers."""

    def test_user_messages_are_sanitized(self):
        """User messages never include provider free text."""
        result = CallbackResult.fail(
            FailureReason.EXCHANGE_FAILED,
            "Token exchange failed with status 400: weird (<script>)",
            provider_error="weird_internal_code",
            provider_key="acme",
        )

        assert "weird" not in result.user_message
        assert result.user_message.startswith("Acme did not accept")

    def test_persistence_failed_message(self):
        """PERSISTENCE_FAILED asks for a reconnect."""
        result = CallbackResult.fail(FailureReason.PERSISTENCE_FAILED, "disk full")

        assert "reconnect" in result.user_message

    def test_logging_observer_levels(self, caplog):
        """Persistence failures are logged as errors, auth failures as warnings."""
        from integration_oauth.orchestrator import OAuthOutcome

        observer = LoggingObserver()
        with caplog.at_level(logging.INFO, logger="integration_oauth.orchestrator"):
            observer.record(OAuthOutcome("callback", True, provider_key="acme"))
            observer.record(
                OAuthOutcome("callback", False, FailureReason.INVALID_STATE, detail="x")
            )
            observer.record(
                OAuthOutcome("callback", False, FailureReason.PERSISTENCE_FAILED, detail="y")
            )

        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.INFO, logging.WARNING, logging.ERROR]

    def test_nonce_guard_forgets_expired_nonces(self):
        """Expired nonces are purged and may be claimed again."""
        now = {"value": FIXED_NOW}
        guard = InMemoryNonceGuard(clock=lambda: now["value"])

        assert guard.claim("n1", FIXED_NOW + timedelta(minutes=10)) is True
        assert guard.claim("n1", FIXED_NOW + timedelta(minutes=10)) is False

        now["value"] = FIXED_NOW + timedelta(minutes=11)
        assert guard.claim("n2", FIXED_NOW + timedelta(minutes=21)) is True
        assert len(guard) == 1
