import hashlib

def hash_stable(data: str) -> str:
    """Short stable SHA256 digest, safe to embed in Redis keys"""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]

def cache_key(namespace: str, value: str) -> str:
    return f"{namespace}:{hash_stable(value)}"
