"""Configuration utilities for the calreplica CLI.

This module provides shared configuration functions used across CLI commands:
paths under ``~/.calreplica``, the JSON config file, logging setup and the
wiring of store, gateway and engine.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from calreplica.client.api import GatewayClient
from calreplica.client.credentials import JsonTokenVault, OAuthCredentialProvider
from calreplica.client.state import LocalStore
from calreplica.client.sync.engine import SyncEngine
from calreplica.core.config import DEFAULT_BASE_URL, DEFAULT_TOKEN_URL, GatewayConfig, SyncSettings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def get_config_dir() -> Path:
    """Get the configuration directory for calreplica.

    Returns:
        Path to ~/.calreplica.
    """
    return Path.home() / ".calreplica"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


def get_state_path() -> Path:
    """Get the path to the replica database."""
    return get_config_dir() / "state.db"


def get_token_path() -> Path:
    """Get the path to the token vault."""
    return get_config_dir() / "tokens.json"


def get_log_path() -> Path:
    return get_config_dir() / "calreplica.log"


def load_config() -> dict[str, Any]:
    """Load configuration from config file."""
    config_file = get_config_file()
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, Any]) -> None:
    """Save configuration to config file."""
    config_file = get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Configure logging to stdout and optionally to a file.

    Args:
        verbose: Log DEBUG messages instead of INFO.
        log_file: Optional path of a log file.
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger("calreplica")
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(formatter)
    root_logger.addHandler(stdout_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)


def gateway_config(config: dict[str, Any]) -> GatewayConfig:
    return GatewayConfig(
        base_url=config.get("base_url", DEFAULT_BASE_URL),
        token_url=config.get("token_url", DEFAULT_TOKEN_URL),
        timeout=float(config.get("timeout", 30.0)),
        verify_ssl=bool(config.get("verify_ssl", True)),
    )


def sync_settings(config: dict[str, Any]) -> SyncSettings:
    return SyncSettings.from_dict(config.get("sync", {}))


@dataclass
class Services:
    """Objects wired together for one CLI invocation."""

    store: LocalStore
    vault: JsonTokenVault
    gateway: GatewayClient
    engine: SyncEngine
    settings: SyncSettings


@contextmanager
def open_store() -> Iterator[LocalStore]:
    """Open the replica database for the duration of a command."""
    store = LocalStore(get_state_path())
    try:
        yield store
    finally:
        store.close()


@contextmanager
def open_services() -> Iterator[Services]:
    """Wire store, credentials, gateway and engine from the config file."""
    config = load_config()
    settings = sync_settings(config)
    gw_config = gateway_config(config)

    with open_store() as store:
        vault = JsonTokenVault(get_token_path())
        credentials = OAuthCredentialProvider(
            store,
            vault,
            token_url=gw_config.token_url,
            client_id=config.get("client_id", ""),
            client_secret=config.get("client_secret"),
        )
        try:
            with GatewayClient(gw_config, credentials) as gateway:
                engine = SyncEngine(store, gateway, settings=settings)
                yield Services(
                    store=store,
                    vault=vault,
                    gateway=gateway,
                    engine=engine,
                    settings=settings,
                )
        finally:
            credentials.close()
