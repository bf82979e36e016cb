import logging

import redis.asyncio as redis

from arang_chat.settings import Settings, settings

logger = logging.getLogger(__name__)

_client: redis.Redis | None = None


def get_redis_client(app_settings: Settings | None = None) -> redis.Redis | None:
    """Process-wide client for the change feed; ``None`` without REDIS_URL."""
    global _client
    app_settings = app_settings or settings
    if not app_settings.redis_url:
        return None
    if _client is not None:
        return _client

    connect_timeout = app_settings.redis_socket_timeout_seconds
    if connect_timeout <= 0:
        connect_timeout = 5.0
    try:
        # No read timeout: pub/sub listeners block until the next event.
        _client = redis.from_url(
            app_settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            health_check_interval=30,
        )
    except (redis.RedisError, ValueError):
        logger.error("redis_client_init_failed", exc_info=True)
        return None
    logger.info("redis_client_ready", extra={"extra": {"channel_prefix": app_settings.redis_channel_prefix}})
    return _client


async def redis_reachable(client: redis.Redis) -> bool:
    try:
        return bool(await client.ping())
    except redis.RedisError as exc:
        logger.warning("redis_ping_failed", extra={"extra": {"error": type(exc).__name__}})
        return False


async def close_redis_client() -> None:
    global _client
    client, _client = _client, None
    if client is not None:
        await client.aclose()
