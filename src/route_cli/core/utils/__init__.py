"""Utility functions and helpers."""

from route_cli.core.utils.log_config import setup_logging

__all__ = ["setup_logging"]
