"""Routers module - slash command handlers"""

from . import commands

__all__ = ["commands"]
