"""Tests for per-account credentials."""

from __future__ import annotations

import os
import stat
from collections.abc import Iterator
from pathlib import Path

import httpx
import pytest

from calreplica.client.api import NetworkError, ServerError
from calreplica.client.credentials import (
    JsonTokenVault,
    OAuthCredentialProvider,
    TokenRefreshError,
    TokenSet,
)
from calreplica.client.state import LocalStore
from tests.fakes import ACCOUNT, FakeClock

TOKEN_URL = "http://auth.test/token"


class TestJsonTokenVault:
    """Tests for the JSON token vault."""

    def test_save_and_load(self, tmp_path: Path) -> None:
        vault = JsonTokenVault(tmp_path / "tokens.json")
        vault.save("h1", TokenSet("access", "refresh", 123.0))
        assert vault.load("h1") == TokenSet("access", "refresh", 123.0)
        assert vault.load("missing") is None

    def test_file_is_private(self, tmp_path: Path) -> None:
        """Tokens are readable by the owner only."""
        path = tmp_path / "tokens.json"
        JsonTokenVault(path).save("h1", TokenSet("access"))
        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    def test_delete(self, tmp_path: Path) -> None:
        vault = JsonTokenVault(tmp_path / "tokens.json")
        vault.save("h1", TokenSet("a"))
        vault.save("h2", TokenSet("b"))
        vault.delete("h1")
        assert vault.load("h1") is None
        assert vault.load("h2") is not None


class TestTokenSet:
    def test_expiry_with_leeway(self) -> None:
        tokens = TokenSet("a", expires_at=1000.0)
        assert not tokens.is_expired(900.0)
        assert tokens.is_expired(950.0)

    def test_no_expiry_never_expires(self) -> None:
        assert not TokenSet("a").is_expired(1e12)


class TestOAuthCredentialProvider:
    """Tests for the refresh-token grant."""

    @pytest.fixture
    def vault(self, tmp_path: Path) -> JsonTokenVault:
        return JsonTokenVault(tmp_path / "tokens.json")

    @pytest.fixture
    def provider(
        self, store: LocalStore, vault: JsonTokenVault, clock: FakeClock
    ) -> Iterator[OAuthCredentialProvider]:
        p = OAuthCredentialProvider(
            store, vault, token_url=TOKEN_URL, client_id="cid", client_secret="secret", clock=clock
        )
        yield p
        p.close()

    def test_returns_valid_token_without_refresh(
        self, provider: OAuthCredentialProvider, vault: JsonTokenVault, clock: FakeClock
    ) -> None:
        vault.save(ACCOUNT, TokenSet("live", "r", clock.now + 3600))
        assert provider.get_valid_access_token(ACCOUNT) == "live"

    def test_refreshes_expired_token(
        self,
        provider: OAuthCredentialProvider,
        vault: JsonTokenVault,
        store: LocalStore,
        clock: FakeClock,
        httpx_mock,  # type: ignore[no-untyped-def]
    ) -> None:
        """Should exchange the refresh token and persist the new expiry."""
        vault.save(ACCOUNT, TokenSet("stale", "refresh-1", clock.now - 10))
        httpx_mock.add_response(
            method="POST",
            url=TOKEN_URL,
            json={"access_token": "fresh", "expires_in": 3600},
        )

        assert provider.get_valid_access_token(ACCOUNT) == "fresh"

        saved = vault.load(ACCOUNT)
        assert saved is not None
        assert saved.refresh_token == "refresh-1"
        assert saved.expires_at == clock.now + 3600
        assert store.get_account(ACCOUNT).token_expiry == clock.now + 3600  # type: ignore[union-attr]
        body = httpx_mock.get_request().content.decode()
        assert "grant_type=refresh_token" in body
        assert "client_secret=secret" in body

    def test_rejected_refresh_token(
        self, provider: OAuthCredentialProvider, vault: JsonTokenVault, httpx_mock  # type: ignore[no-untyped-def]
    ) -> None:
        vault.save(ACCOUNT, TokenSet("stale", "revoked", 0.0))
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=400, json={"error": "invalid_grant"})
        with pytest.raises(TokenRefreshError):
            provider.refresh(ACCOUNT)

    def test_missing_refresh_token(self, provider: OAuthCredentialProvider, vault: JsonTokenVault) -> None:
        vault.save(ACCOUNT, TokenSet("only-access"))
        with pytest.raises(TokenRefreshError):
            provider.refresh(ACCOUNT)

    def test_token_endpoint_down(
        self, provider: OAuthCredentialProvider, vault: JsonTokenVault, httpx_mock  # type: ignore[no-untyped-def]
    ) -> None:
        """A server error at the token endpoint is retryable, not an auth failure."""
        vault.save(ACCOUNT, TokenSet("stale", "r", 0.0))
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=503)
        with pytest.raises(ServerError):
            provider.refresh(ACCOUNT)

    def test_token_endpoint_unreachable(
        self, provider: OAuthCredentialProvider, vault: JsonTokenVault, httpx_mock  # type: ignore[no-untyped-def]
    ) -> None:
        vault.save(ACCOUNT, TokenSet("stale", "r", 0.0))
        httpx_mock.add_exception(httpx.ConnectError("offline"))
        with pytest.raises(NetworkError):
            provider.refresh(ACCOUNT)
