"""
Utility functions for the freight market realtime layer
"""

from .helpers import generate_id, utc_now_iso

__all__ = ["generate_id", "utc_now_iso"]
