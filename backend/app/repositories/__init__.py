"""Repository abstractions for database interactions."""

from .cache_repository import CacheRepository

__all__ = ["CacheRepository"]
