"""
Cross-Tab Synchronization Channel.

A named publish/subscribe bus letting any tab announce "refresh everything"
or "refresh one resource". Delivery is best effort: it tells tabs to re-fetch,
it does not order or lock anything.

Two transports are provided. The local backend connects every channel of the
same name inside one process; the Redis backend connects processes through
Redis pub/sub. In both, the publishing tab receives its own messages too.
"""

import asyncio
import contextlib
import inspect
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from pydantic import ValidationError

from planit.app.core.config import Settings, settings
from planit.app.core.redis_client import get_redis, ping_redis
from planit.app.models.enums import SyncMessageType
from planit.app.schemas.sync import SyncMessage

logger = logging.getLogger("planit.sync")

MessageHandler = Callable[[SyncMessage], Union[None, Awaitable[None]]]


class Subscription:
    """
    One handler registered on a channel.

    With a debounce window, messages arriving inside the window are coalesced
    and delivered once the window goes quiet: duplicates collapse and a
    REFRESH_ALL replaces every per-view message.
    """

    def __init__(
        self,
        channel: "SyncChannel",
        handler: MessageHandler,
        views: Optional[Iterable[str]] = None,
        debounce_ms: int = 0,
    ):
        self._channel = channel
        self.handler = handler
        self.views = frozenset(getattr(v, "value", v) for v in views) if views else None
        self.debounce_seconds = max(debounce_ms, 0) / 1000
        self.active = True
        self._pending: Dict[str, SyncMessage] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    def matches(self, message: SyncMessage) -> bool:
        if message.type is SyncMessageType.REFRESH_ALL:
            return True
        return self.views is None or message.view in self.views

    def dispatch(self, message: SyncMessage) -> None:
        if not self.active or not self.matches(message):
            return
        if self.debounce_seconds <= 0:
            self._invoke(message)
            return

        self._pending[message.dedupe_key] = message
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.debounce_seconds, self._flush)

    def _flush(self) -> None:
        self._timer = None
        pending, self._pending = self._pending, {}
        refresh_all = pending.get(SyncMessageType.REFRESH_ALL.value)
        messages = [refresh_all] if refresh_all is not None else list(pending.values())
        for message in messages:
            self._invoke(message)

    def _invoke(self, message: SyncMessage) -> None:
        try:
            result = self.handler(message)
        except Exception:
            logger.exception("Sync handler failed", extra={"channel": self._channel.name, "sync_type": message.type.value, "view": message.view})
            return

        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async sync handler failed", exc_info=exc, extra={"channel": self._channel.name})

    @property
    def has_pending(self) -> bool:
        return self._timer is not None or bool(self._tasks)

    def cancel(self) -> None:
        """Stop receiving; a window that has not fired yet is dropped."""
        self.active = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        self._channel._remove(self)


class LocalBroadcastBackend:
    """In-process transport; delivery is scheduled on the loop, never inline."""

    def __init__(self):
        self._channels: Dict[str, List["SyncChannel"]] = {}

    async def attach(self, channel: "SyncChannel") -> None:
        self._channels.setdefault(channel.name, []).append(channel)

    async def detach(self, channel: "SyncChannel") -> None:
        members = self._channels.get(channel.name, [])
        if channel in members:
            members.remove(channel)
        if not members:
            self._channels.pop(channel.name, None)

    async def post(self, name: str, payload: str) -> None:
        loop = asyncio.get_running_loop()
        for channel in list(self._channels.get(name, ())):
            loop.call_soon(channel.deliver, payload)

    async def ping(self) -> bool:
        return True

    def channel_count(self, name: str) -> int:
        return len(self._channels.get(name, ()))


class RedisBroadcastBackend:
    """
    Redis pub/sub transport.

    One listener task per channel name, started when the first local channel
    attaches and stopped when the last one detaches.
    """

    def __init__(self, redis_client=None):
        self._redis = redis_client
        self._channels: Dict[str, List["SyncChannel"]] = {}
        self._listeners: Dict[str, Tuple[object, asyncio.Task]] = {}
        self._lock = asyncio.Lock()

    async def _client(self):
        return self._redis if self._redis is not None else await get_redis()

    async def attach(self, channel: "SyncChannel") -> None:
        async with self._lock:
            self._channels.setdefault(channel.name, []).append(channel)
            if channel.name in self._listeners:
                return
            client = await self._client()
            pubsub = client.pubsub()
            await pubsub.subscribe(channel.name)
            task = asyncio.create_task(self._listen(channel.name, pubsub))
            self._listeners[channel.name] = (pubsub, task)

    async def _listen(self, name: str, pubsub) -> None:
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                data = message.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                for channel in list(self._channels.get(name, ())):
                    channel.deliver(data)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Redis sync listener stopped", extra={"channel": name})

    async def detach(self, channel: "SyncChannel") -> None:
        async with self._lock:
            members = self._channels.get(channel.name, [])
            if channel in members:
                members.remove(channel)
            if members:
                return
            self._channels.pop(channel.name, None)
            listener = self._listeners.pop(channel.name, None)
        if listener is None:
            return

        pubsub, task = listener
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        await pubsub.unsubscribe(channel.name)
        await pubsub.aclose()

    async def post(self, name: str, payload: str) -> None:
        client = await self._client()
        await client.publish(name, payload)

    async def ping(self) -> bool:
        return await ping_redis(await self._client())


_local_backend = LocalBroadcastBackend()


def default_backend(config: Optional[Settings] = None):
    """Transport selected by settings.sync_backend."""
    config = config or settings
    if config.sync_backend == "local":
        return _local_backend
    if config.sync_backend == "redis":
        return RedisBroadcastBackend()
    raise ValueError(f"Unknown sync backend: {config.sync_backend}")


class SyncChannel:
    """
    A tab's handle on the named broadcast bus.

    The channel attaches to its transport lazily, on the first subscribe or
    publish, and stays attached for the tab's lifetime. close() is optional.
    """

    def __init__(self, name: Optional[str] = None, backend=None, config: Optional[Settings] = None):
        config = config or settings
        self.name = name or config.sync_channel_name
        self._backend = backend if backend is not None else default_backend(config)
        self._subscriptions: List[Subscription] = []
        self._opened = False
        self._open_lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def subscriptions(self) -> Tuple[Subscription, ...]:
        return tuple(self._subscriptions)

    async def _ensure_open(self) -> None:
        if self._opened:
            return
        async with self._open_lock:
            if not self._opened:
                await self._backend.attach(self)
                self._opened = True
                logger.debug("Sync channel opened", extra={"channel": self.name})

    async def subscribe(
        self,
        handler: MessageHandler,
        views: Optional[Iterable[str]] = None,
        debounce_ms: int = 0,
    ) -> Subscription:
        """
        Register a handler.

        Args:
            handler: Sync or async callable taking a SyncMessage
            views: Resource keys of interest; None means every view.
                REFRESH_ALL is always delivered.
            debounce_ms: Coalescing window, 0 delivers immediately
        """
        await self._ensure_open()
        subscription = Subscription(self, handler, views=views, debounce_ms=debounce_ms)
        self._subscriptions.append(subscription)
        return subscription

    async def ping(self) -> bool:
        """True when the transport can currently carry messages."""
        return await self._backend.ping()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(self, message: SyncMessage) -> bool:
        """
        Post a message to every tab, this one included.

        Returns:
            False when the transport failed; publishing never raises
        """
        try:
            await self._ensure_open()
            await self._backend.post(self.name, message.to_wire())
        except Exception:
            logger.exception("Sync publish failed", extra={"channel": self.name, "sync_type": message.type.value, "view": message.view})
            return False
        logger.debug("Sync message published", extra={"channel": self.name, "sync_type": message.type.value, "view": message.view})
        return True

    async def refresh_all(self) -> bool:
        return await self.publish(SyncMessage.refresh_all())

    async def refresh_view(self, view: str) -> bool:
        return await self.publish(SyncMessage.refresh_view(view))

    def deliver(self, raw: Union[str, bytes, dict]) -> None:
        """Entry point for transports."""
        try:
            if isinstance(raw, dict):
                message = SyncMessage.model_validate(raw)
            else:
                message = SyncMessage.model_validate_json(raw)
        except ValidationError:
            logger.warning("Dropping malformed sync message", extra={"channel": self.name})
            return

        for subscription in list(self._subscriptions):
            subscription.dispatch(message)

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()
        if self._opened:
            self._opened = False
            await self._backend.detach(self)


# Process-wide channel, created on first use
_channel: Optional[SyncChannel] = None


def get_sync_channel(config: Optional[Settings] = None) -> SyncChannel:
    """Return this process's channel, constructing it on first call."""
    global _channel
    if _channel is None:
        _channel = SyncChannel(config=config)
    return _channel


async def close_sync_channel() -> None:
    global _channel
    if _channel is not None:
        channel, _channel = _channel, None
        await channel.close()


async def broadcast_refresh_all() -> bool:
    return await get_sync_channel().refresh_all()


async def broadcast_refresh_view(view: Optional[str]) -> bool:
    if not view:
        logger.warning("broadcast_refresh_view called without a view")
        return False
    return await get_sync_channel().refresh_view(view)
