from .hash import cache_key, hash_stable
from .urls import safe_url_for_log

__all__ = ["cache_key", "hash_stable", "safe_url_for_log"]
