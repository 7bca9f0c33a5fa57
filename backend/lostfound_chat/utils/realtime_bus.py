import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
import structlog

from lostfound_chat import config
from lostfound_chat.utils.websocket_manager import ConnectionManager


logger = structlog.get_logger(__name__)

FANOUT_CHANNEL = "lostfound:fanout"


class NoopBus:

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def close(self) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        await self._redis.publish(channel, message)

    async def subscribe(self, channel: str, on_message: Callable[[str], Awaitable[None]]):
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)

        class _Sub:
            _running = True
            async def run(self_inner):
                while self_inner._running:
                    try:
                        msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                        if msg and msg.get("type") == "message":
                            data = msg.get("data")
                            if isinstance(data, bytes):
                                data = data.decode("utf-8")
                            await on_message(data)
                    except redis.RedisError:
                        logger.warning("bus_receive_failed", channel=channel, exc_info=True)
                        await asyncio.sleep(0.5)
                    except Exception:
                        logger.exception("bus_handler_failed", channel=channel)

            async def cancel(self_inner):
                self_inner._running = False
                try:
                    await pubsub.unsubscribe(channel)
                    await pubsub.aclose()
                except redis.RedisError:
                    logger.warning("bus_unsubscribe_failed", channel=channel)

        return _Sub()

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is not None:
        return _bus
    _bus = RedisBus(config.REDIS_URL) if config.REDIS_URL else NoopBus()
    return _bus


class RoomBroadcaster:
    """Fans events out to room members and personal channels.

    Without an enabled bus, delivery goes straight to this process's
    connections. With one, every event is published as an envelope and each
    process delivers it to the connections it holds, this one included.
    """

    def __init__(self, registry: ConnectionManager, bus=None) -> None:
        self._registry = registry
        self._bus = bus if bus is not None else NoopBus()
        self._subscriber = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if not self._bus.enabled or self._task is not None:
            return
        self._subscriber = await self._bus.subscribe(FANOUT_CHANNEL, self._on_bus_message)
        self._task = asyncio.create_task(self._subscriber.run())

    async def stop(self) -> None:
        if self._subscriber is not None:
            await self._subscriber.cancel()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._subscriber = None
        self._task = None

    async def publish_room(
        self,
        conversation_id: str,
        event: Dict[str, Any],
        exclude_connection: Optional[str] = None,
        exclude_principal: Optional[str] = None,
    ) -> None:
        await self._publish({
            "scope": "room",
            "target": conversation_id,
            "event": event,
            "exclude_connection": exclude_connection,
            "exclude_principal": exclude_principal,
        })

    async def publish_user(self, principal_id: str, event: Dict[str, Any]) -> None:
        await self._publish({"scope": "user", "target": principal_id, "event": event})

    async def _publish(self, envelope: Dict[str, Any]) -> None:
        if self._bus.enabled:
            try:
                await self._bus.publish(FANOUT_CHANNEL, json.dumps(envelope, default=str))
                return
            except redis.RedisError:
                logger.warning("bus_publish_failed", scope=envelope["scope"], target=envelope["target"], exc_info=True)
        self.deliver(envelope)

    async def _on_bus_message(self, raw: str) -> None:
        try:
            envelope = json.loads(raw)
            self.deliver(envelope)
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.warning("bus_envelope_invalid", exc_info=True)

    def deliver(self, envelope: Dict[str, Any]) -> int:
        if envelope.get("scope") == "room":
            connections = self._registry.connections_for(envelope["target"])
        else:
            connections = self._registry.connections_of(envelope["target"])
        delivered = 0
        for conn in connections:
            if conn.id == envelope.get("exclude_connection"):
                continue
            if conn.principal.id == envelope.get("exclude_principal"):
                continue
            if conn.push(envelope["event"]):
                delivered += 1
        return delivered
