"""Configuration"""

from .settings import Market, RestSettings, Settings, StreamSettings

__all__ = [
    "Market",
    "RestSettings",
    "Settings",
    "StreamSettings",
]
