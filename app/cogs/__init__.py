"""
Cogs Package - Discord bot extensions.

Each cog is loaded by ``app.bot.load_extensions`` and registers its slash
commands on the command groups created by the bot.
"""

from typing import List

AVAILABLE_COGS: List[str] = [
    "movie_night",  # Movie night attendance and tier rewards
]

def get_cog_path(cog_name: str) -> str:
    """
    Get the full import path for a specified cog.

    Raises:
        ValueError: If cog_name is not in AVAILABLE_COGS
    """
    if cog_name not in AVAILABLE_COGS:
        raise ValueError(f"Unknown cog '{cog_name}'. Available: {AVAILABLE_COGS}")
    return f"app.cogs.{cog_name}"

__all__ = ["AVAILABLE_COGS", "get_cog_path"]
