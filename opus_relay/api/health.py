from fastapi import APIRouter

from opus_relay.config.settings import config
from opus_relay.core.state import state
from opus_relay.infra.redis import ACTIVE_RELAYS_COUNTER

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint"""
    return {
        "status": "running",
        "service": config.api.title,
        "version": config.api.version,
        "ytdlp_version": state.ytdlp_version,
        "ffmpeg_version": state.ffmpeg_version,
        "redis_enabled": state.redis is not None
    }


@router.get("/health")
async def health_check():
    """Health check with Redis status and active relay count"""
    redis_status = "disabled"
    active_relays = 0

    if state.redis:
        try:
            await state.redis.ping()
            redis_status = "connected"
            active_relays = int(await state.redis.get(ACTIVE_RELAYS_COUNTER) or 0)
        except Exception:
            redis_status = "disconnected"

    return {
        "status": "healthy",
        "redis": redis_status,
        "active_relays": active_relays,
        "max_concurrent": config.relay.max_concurrent
    }
