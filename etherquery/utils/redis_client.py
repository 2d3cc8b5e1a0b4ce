import json
from redis import asyncio as aioredis
from redis.exceptions import RedisError
from etherquery.utils.config import settings
from etherquery.utils.logger import get_logger

logger = get_logger(__name__)

EXPORTS_CHANNEL = "exports"

# single connection pool to be reused
redis = None

async def get_redis():
    global redis
    if redis is None:
        redis = aioredis.from_url(settings.REDIS_URL or "redis://localhost", decode_responses=True)
    return redis


class RedisNotifier:
    """Publishes every cursor advance on the exports channel."""

    def __init__(self, client=None, channel: str = EXPORTS_CHANNEL):
        self.client = client
        self.channel = channel

    async def publish(self, stream: str, cursor, records: int):
        client = self.client or await get_redis()
        message = json.dumps({
            "stream": stream,
            "block_number": cursor.height,
            "block_hash": cursor.hash,
            "records": records,
        })
        try:
            await client.publish(self.channel, message)
        except RedisError as e:
            # notifications are advisory, the cursor is already durable
            logger.warning("Failed to publish export notification", error=str(e))
