"""
Redis Pub/Sub によるイベント発行

ローカルトランザクションのコミット後に発行する通知。
Pub/Sub は配信保証のない通知経路なので、発行に失敗しても
コミット済みの状態変更は取り消さない (警告ログのみ)。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish_event(
    redis: aioredis.Redis, channel: str, event_type: str, data: dict
) -> None:
    try:
        await redis.publish(
            channel,
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError:
        logger.warning("failed to publish %s to %s", event_type, channel, exc_info=True)
