"""Utility helpers for pairchat."""

from .logging import configure_logging
from .pools import DEFAULT_POOLS, PoolStore

__all__ = ["DEFAULT_POOLS", "PoolStore", "configure_logging"]
