"""
Cache utilities for Match Picks
Provides caching decorators and invalidation helpers for leaderboard reads
"""

import functools

from flask import current_app

from matchpicks import cache


def rankings_cache_key(group_id):
    """Cache key of a group's leaderboard"""
    return f"group_rankings_{group_id}"


def cached_group_view(key_func, timeout=None):
    """
    Decorator for caching JSON-serialisable view payloads per group

    Args:
        key_func: builds the cache key from the view's group_id
        timeout: Cache timeout in seconds (default RANKINGS_CACHE_TIMEOUT)
    """

    def decorator(f):
        @functools.wraps(f)
        def wrapped(group_id, *args, **kwargs):
            cache_key = key_func(group_id)

            result = cache.get(cache_key)
            if result is not None:
                current_app.logger.debug(f"Cache hit for key: {cache_key}")
                return result

            result = f(group_id, *args, **kwargs)
            cache.set(
                cache_key,
                result,
                timeout=timeout or current_app.config.get("RANKINGS_CACHE_TIMEOUT"),
            )
            current_app.logger.debug(f"Cache set for key: {cache_key}")

            return result

        return wrapped

    return decorator


def invalidate_group_rankings(group_ids):
    """
    Drop cached leaderboards for the given groups

    Args:
        group_ids: ids of groups whose rankings changed
    """
    keys = [rankings_cache_key(group_id) for group_id in group_ids]
    if not keys:
        return
    cache.delete_many(*keys)
    current_app.logger.debug(f"Cache cleared for keys: {keys}")
