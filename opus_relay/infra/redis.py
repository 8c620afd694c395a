from typing import Optional
import redis.asyncio as aioredis
from rich.console import Console
from opus_relay.config.settings import config
from opus_relay.core.state import state

console = Console()

ACTIVE_RELAYS_COUNTER = "active_relays_count"
ACTIVE_RELAY_PREFIX = "active_relay:"

async def init_redis() -> None:
    """Initialize Redis connection, recovering the active relay counter"""
    try:
        redis_client = aioredis.from_url(
            config.redis.url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=config.redis.socket_timeout
        )
        await redis_client.ping()

        # Slots left by a previous process expire on their own; recount the live ones
        keys = []
        async for key in redis_client.scan_iter(match=f"{ACTIVE_RELAY_PREFIX}*", count=100):
            keys.append(key)

        await redis_client.set(ACTIVE_RELAYS_COUNTER, len(keys))

        state.redis = redis_client

        if keys:
            console.print(f"[yellow]✓ Redis connected (recovered {len(keys)} active relays)[/yellow]")
        else:
            console.print("[green]✓ Redis connected[/green]")

    except Exception as e:
        console.print(f"[yellow]⚠ Redis connection failed: {str(e)}[/yellow]")
        state.redis = None

def get_redis() -> Optional[aioredis.Redis]:
    """Get Redis client from state"""
    return state.redis

async def close_redis() -> None:
    """Close Redis connection"""
    if state.redis:
        await state.redis.aclose()
        state.redis = None
        console.print("[dim]✓ Redis connection closed[/dim]")
