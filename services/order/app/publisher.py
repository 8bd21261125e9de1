"""
Order Service — 変更通知の発行 (Redis Pub/Sub)

書き込みがコミットされた後にイベントを発行する。
発行は best-effort: 失敗しても注文自体は確定しているので、
ログに残して呼び出し元には成功を返す。
"""

import json
import logging
from typing import Protocol

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class EventPublisher(Protocol):
    async def publish(self, event: BaseModel) -> None: ...


class RedisEventPublisher:
    """order_events チャネルにイベントを JSON で発行する。"""

    def __init__(self, redis: aioredis.Redis | None, channel: str) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        event_type = type(event).__name__
        if self.redis is None:
            logger.warning("Redis is not connected; dropping %s", event_type)
            return
        payload = json.dumps({
            "event_type": event_type,
            "data": event.model_dump(mode="json"),
        }, default=str)
        try:
            await self.redis.publish(self.channel, payload)
        except aioredis.RedisError:
            logger.exception("Failed to publish %s to %s", event_type, self.channel)
