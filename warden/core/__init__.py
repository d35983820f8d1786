"""Warden core: configuration and logging."""

from warden.core.config import (
    WardenConfig,
    get_config,
    reset_config,
    set_config,
)
from warden.core.logging import setup_logging

__all__ = [
    "WardenConfig",
    "get_config",
    "set_config",
    "reset_config",
    "setup_logging",
]
