"""Shared response cache."""

from keel.cache.response_cache import CacheEntry, ResponseCache, cache_key

__all__ = ["CacheEntry", "ResponseCache", "cache_key"]
