import asyncio
import logging

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from booth_waiting.config import settings
from booth_waiting.errors import StorageUnavailable

logger = logging.getLogger(__name__)

pool = redis.ConnectionPool.from_url(
    settings.redis_url, decode_responses=True, max_connections=settings.redis_max_connections
)


def booth_queue_key(booth_id: int) -> str:
    """Sorted set of WAITING ids at a booth, scored by enqueue sequence."""
    return f"waiting:booth:{booth_id}"


async def get_redis():
    redis_client = redis.Redis(connection_pool=pool)
    try:
        yield redis_client
    finally:
        await redis_client.aclose()


async def get_redis_session():
    return redis.Redis(connection_pool=pool)


async def redis_execute(
    redis_client, command, *args, retries=None, delay=None
):
    retries = retries or settings.redis_retries
    delay = settings.redis_retry_delay if delay is None else delay
    for attempt in range(retries):
        try:
            return await getattr(redis_client, command)(*args)
        except (RedisConnectionError, RedisTimeoutError) as e:
            if attempt == retries - 1:
                logger.error(f"Redis {command} failed after {retries} attempts: {e}")
                raise StorageUnavailable(f"Redis Error: {e}")
            await asyncio.sleep(delay)
