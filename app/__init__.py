"""
MovieNight - Discord Bot Application Package

This package contains the movie night bot: voice attendance tracking with
crash-safe snapshots, qualification policies and tiered reward roles.
"""

__version__ = "1.0.0"
__author__ = "MovieNight Team"

from .db import run_db_query, run_db_transaction

__all__ = ["run_db_query", "run_db_transaction"]
