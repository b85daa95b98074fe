"""Configuration loading."""

from .settings import ENV_PREFIX, ResilienceSettings

__all__ = ["ENV_PREFIX", "ResilienceSettings"]
