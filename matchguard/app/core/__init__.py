"""Core utilities for the protection stack."""

from matchguard.app.core.config import settings
from matchguard.app.core.logging import get_logger, setup_logging
from matchguard.app.core.store import (
    InMemoryTTLStore,
    PeriodicSweeper,
    RedisTTLStore,
    TTLStore,
    create_store,
)

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "TTLStore",
    "InMemoryTTLStore",
    "RedisTTLStore",
    "PeriodicSweeper",
    "create_store",
]
