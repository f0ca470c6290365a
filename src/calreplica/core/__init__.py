"""Core module - Shared configuration and enums."""

from calreplica.core.config import (
    DEFAULT_BASE_URL,
    DEFAULT_TOKEN_URL,
    GatewayConfig,
    SyncSettings,
    SyncWindow,
)
from calreplica.core.types import SyncState

__all__ = [
    # Config
    "DEFAULT_BASE_URL",
    "DEFAULT_TOKEN_URL",
    "GatewayConfig",
    "SyncSettings",
    "SyncWindow",
    # Types
    "SyncState",
]
