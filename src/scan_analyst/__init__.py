"""Scan analyst package."""

from .config import AppConfig, RouterConfig

__all__ = ["AppConfig", "RouterConfig"]
