"""Per-account credentials for the remote gateway.

This module provides:
- TokenSet: Access/refresh token pair with expiry
- TokenVault, JsonTokenVault: Where tokens live (outside the replica)
- CredentialProvider: Protocol used by the gateway
- OAuthCredentialProvider: OAuth2 refresh-token grant over httpx

The replica only stores an opaque ``credential_handle`` per account and the
token expiry. Secrets stay in the vault; encrypting that file is the vault
owner's concern.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Protocol

import httpx

from calreplica.client.api import AuthenticationError, NetworkError, ServerError
from calreplica.client.state import LocalStore

logger = logging.getLogger(__name__)

# Refresh this many seconds before the stated expiry
EXPIRY_LEEWAY = 60.0


class TokenRefreshError(AuthenticationError):
    """The refresh token was rejected or is missing."""


@dataclass
class TokenSet:
    """OAuth2 tokens of one account."""

    access_token: str
    refresh_token: str | None = None
    expires_at: float | None = None

    def is_expired(self, now: float, leeway: float = EXPIRY_LEEWAY) -> bool:
        return self.expires_at is not None and self.expires_at - leeway <= now


class TokenVault(Protocol):
    """Storage for tokens keyed by credential handle."""

    def load(self, handle: str) -> TokenSet | None: ...

    def save(self, handle: str, tokens: TokenSet) -> None: ...

    def delete(self, handle: str) -> None: ...


class JsonTokenVault:
    """Token vault backed by a JSON file readable only by its owner."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, dict]:
        if not self._path.exists():
            return {}
        with open(self._path) as f:
            return json.load(f)

    def _write(self, data: dict[str, dict]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, self._path)

    def load(self, handle: str) -> TokenSet | None:
        with self._lock:
            entry = self._read().get(handle)
        return TokenSet(**entry) if entry else None

    def save(self, handle: str, tokens: TokenSet) -> None:
        with self._lock:
            data = self._read()
            data[handle] = asdict(tokens)
            self._write(data)

    def delete(self, handle: str) -> None:
        with self._lock:
            data = self._read()
            if data.pop(handle, None) is not None:
                self._write(data)


class CredentialProvider(Protocol):
    """Supplies access tokens to the gateway."""

    def get_valid_access_token(self, account_id: str) -> str: ...

    def refresh(self, account_id: str) -> str: ...


class OAuthCredentialProvider:
    """Credential provider using the OAuth2 refresh-token grant."""

    def __init__(
        self,
        store: LocalStore,
        vault: TokenVault,
        token_url: str,
        client_id: str,
        client_secret: str | None = None,
        http_client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._vault = vault
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=30.0)
        self._clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def close(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_http:
            self._http.close()

    def _account_lock(self, account_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(account_id, threading.Lock())

    def _handle(self, account_id: str) -> str:
        account = self._store.get_account(account_id)
        if account is None:
            raise AuthenticationError(f"Unknown account: {account_id}")
        return account.credential_handle or account.id

    def get_valid_access_token(self, account_id: str) -> str:
        """Return a usable access token, refreshing it when about to expire."""
        tokens = self._vault.load(self._handle(account_id))
        if tokens is None:
            raise AuthenticationError(f"No credentials stored for {account_id}")
        if tokens.is_expired(self._clock()):
            return self.refresh(account_id)
        return tokens.access_token

    def refresh(self, account_id: str) -> str:
        """Exchange the refresh token for a new access token.

        Raises:
            TokenRefreshError: If no refresh token exists or it was rejected.
            NetworkError: If the token endpoint is unreachable.
        """
        with self._account_lock(account_id):
            handle = self._handle(account_id)
            tokens = self._vault.load(handle)
            if tokens is None or not tokens.refresh_token:
                raise TokenRefreshError(f"No refresh token for {account_id}", 401)

            data = {
                "grant_type": "refresh_token",
                "refresh_token": tokens.refresh_token,
                "client_id": self._client_id,
            }
            if self._client_secret:
                data["client_secret"] = self._client_secret

            try:
                response = self._http.post(self._token_url, data=data)
            except httpx.RequestError as e:
                raise NetworkError(f"Token refresh failed: {e}") from e

            if response.status_code in (400, 401):
                raise TokenRefreshError(
                    f"Refresh token rejected for {account_id}", response.status_code
                )
            if response.status_code >= 500:
                raise ServerError("Token endpoint unavailable", response.status_code)
            if response.status_code >= 400:
                raise TokenRefreshError(
                    f"Token refresh failed for {account_id}", response.status_code
                )

            body = response.json()
            expires_in = body.get("expires_in")
            new_tokens = TokenSet(
                access_token=body["access_token"],
                refresh_token=body.get("refresh_token", tokens.refresh_token),
                expires_at=self._clock() + float(expires_in) if expires_in else None,
            )
            self._vault.save(handle, new_tokens)
            if new_tokens.expires_at is not None:
                self._store.update_token_expiry(account_id, new_tokens.expires_at)
            logger.info(f"Refreshed access token for {account_id}")
            return new_tokens.access_token
