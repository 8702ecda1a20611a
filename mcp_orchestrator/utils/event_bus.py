"""
Event bus for the orchestrator's real-time event stream.

Events fan out to in-process subscribers (bounded queues) and, when enabled,
are relayed to a Redis pub/sub channel for the operations dashboard.
Publishing never blocks and never raises into the publisher.
"""

import asyncio
from typing import List, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from mcp_orchestrator.models.events import OrchestratorEvent
from mcp_orchestrator.utils.logging import get_logger

logger = get_logger("event_bus")


class Subscription:
    """Bounded queue of events for one subscriber. Iterate with ``async for``."""

    def __init__(self, bus: "EventBus", max_queue: int):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.dropped = 0
        self.closed = False

    def _offer(self, event: OrchestratorEvent) -> bool:
        if self._queue.full():
            # Slow consumer: drop the oldest event so the newest always lands
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(
                "Subscriber queue full, dropped oldest event",
                extra={"data": {"dropped_total": self.dropped, "event_type": event.type}}
            )
        self._queue.put_nowait(event)
        return True

    async def get(self, timeout: Optional[float] = None) -> OrchestratorEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout)

    def get_nowait(self) -> OrchestratorEvent:
        return self._queue.get_nowait()

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus._remove(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> OrchestratorEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()


class EventBus:
    """In-process publish/subscribe with an optional Redis relay."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        relay_enabled: bool = False,
        channel: str = "mcp_orchestrator_events",
        max_queue: int = 1000,
    ):
        self.redis_url = redis_url
        self.relay_enabled = relay_enabled and bool(redis_url)
        self.channel = channel
        self.max_queue = max_queue
        self._subscribers: List[Subscription] = []
        self._redis: Optional[Redis] = None

    @classmethod
    def from_settings(cls, settings) -> "EventBus":
        return cls(
            redis_url=settings.REDIS_URL,
            relay_enabled=settings.EVENT_RELAY_ENABLED,
            channel=settings.EVENT_CHANNEL,
            max_queue=settings.EVENT_QUEUE_SIZE,
        )

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, self.max_queue)
        self._subscribers.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: OrchestratorEvent) -> int:
        """
        Deliver an event to every local subscriber and the relay channel.

        Returns:
            Number of local subscribers the event was queued for
        """
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription._offer(event):
                delivered += 1

        logger.debug(
            "Published event",
            extra={
                "data": {
                    "event_id": event.id,
                    "event_type": event.type,
                    "subscribers": delivered,
                    "source": event.source,
                }
            }
        )

        if self.relay_enabled:
            await self._relay(event)
        return delivered

    async def _get_redis(self) -> Optional[Redis]:
        if self._redis is None:
            try:
                client = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    health_check_interval=30,
                    retry_on_timeout=True,
                )
                await client.ping()
                self._redis = client
                logger.info(
                    "Connected to Redis event relay",
                    extra={"data": {"channel": self.channel}}
                )
            except redis.ConnectionError as e:
                logger.warning(
                    "Failed to connect to Redis, events will be delivered locally only",
                    extra={"data": {"error": str(e)}}
                )
                return None
        return self._redis

    async def _relay(self, event: OrchestratorEvent) -> None:
        try:
            client = await self._get_redis()
            if client is None:
                return
            await client.publish(self.channel, event.model_dump_json())
        except redis.ConnectionError:
            logger.warning(
                "Redis connection lost, failed to relay event",
                extra={"data": {"event_id": event.id, "event_type": event.type}}
            )
            self._redis = None
        except Exception as e:
            logger.error(
                "Failed to relay event to Redis",
                exc_info=True,
                extra={"data": {"event_id": event.id, "event_type": event.type, "error": str(e)}}
            )

    async def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("Redis event relay closed")
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._redis = None
