"""
Event bus tests: local fan-out, bounded queues and the Redis relay.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
import redis.asyncio as redis

from mcp_orchestrator.models.events import (
    OrchestratorEvent,
    create_catalog_changed_event,
    create_config_changed_event,
    create_connection_event,
    create_tool_invoked_event,
)
from mcp_orchestrator.models.mcp import ConnectionState, ConnectionStatus, InvocationRecord
from mcp_orchestrator.utils.event_bus import EventBus


def _event(n=0):
    return create_catalog_changed_event(version=n, tools_count=0, resources_count=0, reason="test")


class TestEventHelpers:

    def test_connection_event_types(self):
        assert create_connection_event(
            ConnectionState(server_id="a", status=ConnectionStatus.CONNECTED)).type == "server_connected"
        assert create_connection_event(
            ConnectionState(server_id="a", status=ConnectionStatus.ERROR)).type == "server_error"
        assert create_connection_event(
            ConnectionState(server_id="a", status=ConnectionStatus.DISABLED)).type == "server_disconnected"

    def test_config_changed_event(self):
        event = create_config_changed_event("files", "updated", {"priority": 9})

        assert event.type == "config_changed"
        assert event.source == "server-registry"
        assert event.data == {"server_id": "files", "operation": "updated", "changes": {"priority": 9}}

    def test_tool_invoked_event_omits_arguments(self):
        record = InvocationRecord(tool_name="read", server_id="files", arguments={"secret": "x"},
                                  success=True, latency_ms=3.0)

        event = create_tool_invoked_event(record)

        assert "arguments" not in event.data
        assert event.data["tool_name"] == "read"


class TestLocalDelivery:

    @pytest.mark.asyncio
    async def test_every_subscriber_gets_every_event(self):
        bus = EventBus()
        first, second = bus.subscribe(), bus.subscribe()

        delivered = await bus.publish(_event(1))

        assert delivered == 2
        assert (await first.get(timeout=1)).data["version"] == 1
        assert (await second.get(timeout=1)).data["version"] == 1

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        assert await EventBus().publish(_event()) == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        bus = EventBus(max_queue=2)
        subscription = bus.subscribe()

        for n in range(3):
            await bus.publish(_event(n))

        assert subscription.dropped == 1
        assert subscription.get_nowait().data["version"] == 1
        assert subscription.get_nowait().data["version"] == 2

    @pytest.mark.asyncio
    async def test_closed_subscription_stops_receiving(self):
        bus = EventBus()
        subscription = bus.subscribe()

        subscription.close()
        await bus.publish(_event())

        assert bus.subscriber_count == 0
        assert subscription.pending() == 0

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        bus = EventBus()
        subscription = bus.subscribe()
        await bus.publish(_event(1))
        await bus.publish(_event(2))
        subscription.close()

        versions = [event.data["version"] async for event in subscription]

        assert versions == [1, 2]

    @pytest.mark.asyncio
    async def test_get_timeout(self):
        subscription = EventBus().subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await subscription.get(timeout=0.01)


class TestRedisRelay:

    def test_relay_requires_url(self):
        assert EventBus(redis_url=None, relay_enabled=True).relay_enabled is False

    @pytest.mark.asyncio
    async def test_events_are_relayed(self):
        client = AsyncMock()
        with patch("mcp_orchestrator.utils.event_bus.redis.from_url", return_value=client):
            bus = EventBus(redis_url="redis://localhost:6379", relay_enabled=True, channel="events")
            event = _event(4)

            await bus.publish(event)
            await bus.close()

        client.publish.assert_awaited_once_with("events", event.model_dump_json())
        client.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_redis_keeps_local_delivery(self):
        client = AsyncMock()
        client.ping.side_effect = redis.ConnectionError("refused")
        with patch("mcp_orchestrator.utils.event_bus.redis.from_url", return_value=client):
            bus = EventBus(redis_url="redis://localhost:6379", relay_enabled=True)
            subscription = bus.subscribe()

            delivered = await bus.publish(_event())

        assert delivered == 1
        assert subscription.pending() == 1
        client.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_connection_is_retried_on_next_publish(self):
        client = AsyncMock()
        client.publish.side_effect = [redis.ConnectionError("reset"), 1]
        with patch("mcp_orchestrator.utils.event_bus.redis.from_url", return_value=client) as from_url:
            bus = EventBus(redis_url="redis://localhost:6379", relay_enabled=True)

            await bus.publish(_event(1))
            await bus.publish(_event(2))

        assert from_url.call_count == 2
        assert client.publish.await_count == 2


def test_event_model_round_trip():
    event = _event(7)

    assert OrchestratorEvent.model_validate_json(event.model_dump_json()) == event
