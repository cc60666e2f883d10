"""Core configuration, auth, and shared infrastructure."""

from bizcoach.core.config import Settings, get_settings
from bizcoach.core.auth import create_access_token, decode_access_token
from bizcoach.core.limiter import limiter

__all__ = [
    "Settings",
    "get_settings",
    "create_access_token",
    "decode_access_token",
    "limiter",
]
