import uuid
from fastapi import HTTPException, Request
from opus_relay.infra.redis import get_redis, ACTIVE_RELAYS_COUNTER, ACTIVE_RELAY_PREFIX
from opus_relay.config.settings import config
from opus_relay.core.logging import log_warning

ACQUIRE_SCRIPT = """
local counter_key = KEYS[1]
local slot_key = KEYS[2]
local limit = tonumber(ARGV[1])
local slot_ttl = tonumber(ARGV[2])

local current = tonumber(redis.call('GET', counter_key) or "0")
if current >= limit then
    return 0
end

redis.call('INCR', counter_key)
redis.call('EXPIRE', counter_key, slot_ttl * 2)
redis.call('SETEX', slot_key, slot_ttl, "1")

return 1
"""

# Upper bound on the life of a slot whose release was lost
SLOT_TTL_SECONDS = 6 * 3600

class ConcurrencyLimiter:
    """Cap concurrent relays across workers with an atomic Redis counter"""

    async def __call__(self, request: Request):
        redis = get_redis()
        if not redis:
            return True

        slot_key = f"{ACTIVE_RELAY_PREFIX}{uuid.uuid4()}"

        try:
            allowed = await redis.eval(
                ACQUIRE_SCRIPT,
                2,
                ACTIVE_RELAYS_COUNTER,
                slot_key,
                config.relay.max_concurrent,
                SLOT_TTL_SECONDS
            )
        except Exception as e:
            log_warning(request, f"Concurrency limiter unavailable: {e}")
            return True

        if not allowed:
            raise HTTPException(
                status_code=503,
                detail=f"Server busy ({config.relay.max_concurrent} relays active)"
            )

        request.state.relay_slot_key = slot_key
        return True

async def release_relay_slot(request: Request):
    """Release the slot taken by concurrency_limiter, at most once"""
    slot_key = getattr(request.state, "relay_slot_key", None)
    if not slot_key:
        return
    request.state.relay_slot_key = None

    redis = get_redis()
    if not redis:
        return
    try:
        if await redis.delete(slot_key):
            await redis.decr(ACTIVE_RELAYS_COUNTER)
    except Exception as e:
        log_warning(request, f"Failed to release relay slot: {e}")

concurrency_limiter = ConcurrencyLimiter()
