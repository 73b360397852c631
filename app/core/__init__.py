"""
Core Utilities Module - Shared functionality for the Discord bot.

Provides centralized access to:
- Structured JSON logging
- Reliability and resilience systems for Discord API calls
"""

from .logger import ComponentLogger, setup_logging
from .reliability import discord_resilient, setup_reliability_system

__all__ = [
    "ComponentLogger",
    "setup_logging",
    "discord_resilient",
    "setup_reliability_system",
]
