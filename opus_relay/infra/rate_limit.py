from fastapi import HTTPException, Request
from opus_relay.infra.redis import get_redis
from opus_relay.config.settings import config
from opus_relay.core.logging import log_warning

RATE_LIMIT_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local current = redis.call('INCR', key)
if current == 1 then
    redis.call('EXPIRE', key, window)
end

if current > limit then
    return {0, redis.call('TTL', key)}
end

return {1, 0}
"""

class RedisRateLimiter:
    """Fixed-window per-client rate limiter; fails open without Redis"""

    async def __call__(self, request: Request):
        if not config.rate_limit.enabled:
            return True

        redis = get_redis()
        if not redis:
            return True

        client_ip = request.client.host if request.client else "unknown"
        key = f"rate:{client_ip}:{request.url.path}"

        try:
            allowed, ttl = await redis.eval(
                RATE_LIMIT_SCRIPT,
                1,
                key,
                config.rate_limit.max_requests,
                config.rate_limit.window_seconds
            )
        except Exception as e:
            log_warning(request, f"Rate limiter unavailable: {e}")
            return True

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded, retry in {ttl} seconds",
                headers={"Retry-After": str(ttl)}
            )
        return True

rate_limiter = RedisRateLimiter()
