"""Real-time fan-out of queue changes.

Channels:
- ``queues``: every change, for front-desk boards
- ``doctor-queue-<doctor_id>``: one doctor's dashboard
- ``user-<user_id>``: a specific patient's or doctor's own session

Delivery is best-effort and at-most-once. Nothing is replayed: a display
that connects late fetches current state once, then follows events.

Backends:
- InMemoryNotifier: process-local, for single-instance deployments
- RedisNotifier: Redis pub/sub, so every API process sees every event
"""
import json
import queue
import threading
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import redis

from clinic_dispatch import config
from clinic_dispatch.logging_config import get_logger

logger = get_logger(__name__)


class EventAction(str, Enum):
    ADDED = "added"  # walk-in joined the queue
    BOOKED = "booked"
    NEXT_CALLED = "next_called"
    STATUS_CHANGED = "status_changed"
    CANCELLED = "cancelled"
    PAYMENT_UPDATED = "payment_updated"


@dataclass
class QueueEvent:
    """A single queue/appointment mutation."""
    action: str
    doctor_id: str
    occurred_at: str
    entry: Dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "QueueEvent":
        return cls(**json.loads(raw))


def doctor_channel(doctor_id: str) -> str:
    return f"{config.DOCTOR_CHANNEL_PREFIX}{doctor_id}"


def user_channel(user_id: str) -> str:
    return f"{config.USER_CHANNEL_PREFIX}{user_id}"


class Subscription:
    """Blocking stream of events for one channel."""

    def __init__(self, channel: str):
        self.channel = channel
        self.closed = False

    def get(self, timeout: Optional[float] = None) -> Optional[QueueEvent]:
        """Next event, or None if nothing arrived within ``timeout`` seconds."""
        raise NotImplementedError

    def close(self) -> None:
        self.closed = True

    def __iter__(self) -> Iterator[QueueEvent]:
        while not self.closed:
            event = self.get(timeout=1.0)
            if event is not None:
                yield event

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class Notifier:
    """Publish/subscribe interface used by the dispatch service."""

    def publish(self, channel: str, event: QueueEvent) -> int:
        """Send ``event`` to ``channel``. Returns the number of receivers reached."""
        raise NotImplementedError

    def subscribe(self, channel: str) -> Subscription:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def publish_entry_change(self, event: QueueEvent, user_ids: Iterable[str] = ()) -> None:
        """
        Fan an entry change out to the global, doctor and user channels.

        Args:
            event: Change description
            user_ids: Users (patient, doctor) whose own sessions should hear it
        """
        channels = [config.GLOBAL_CHANNEL, doctor_channel(event.doctor_id)]
        channels.extend(user_channel(uid) for uid in dict.fromkeys(user_ids) if uid)
        for channel in channels:
            self.publish(channel, event)
        logger.debug(
            "queue_event_published",
            action=event.action,
            doctor_id=event.doctor_id,
            channels=channels,
        )


class _MemorySubscription(Subscription):

    def __init__(self, channel: str, notifier: "InMemoryNotifier", maxsize: int):
        super().__init__(channel)
        self._notifier = notifier
        self._events: "queue.Queue[QueueEvent]" = queue.Queue(maxsize=maxsize)

    def deliver(self, event: QueueEvent) -> bool:
        try:
            self._events.put_nowait(event)
            return True
        except queue.Full:
            return False

    def get(self, timeout: Optional[float] = None) -> Optional[QueueEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            super().close()
            self._notifier._unsubscribe(self)


class InMemoryNotifier(Notifier):
    """
    Process-local subscriber registry.

    Pattern: channel -> set of bounded subscriber buffers, guarded by a lock.
    Good for: Development, single-server deployments.
    NOT for: Multi-server production (use RedisNotifier instead).
    """

    def __init__(self, subscriber_queue_size: int = config.SUBSCRIBER_QUEUE_SIZE):
        self.subscriber_queue_size = subscriber_queue_size
        self._channels: Dict[str, Set[_MemorySubscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, channel: str) -> Subscription:
        subscription = _MemorySubscription(channel, self, self.subscriber_queue_size)
        with self._lock:
            self._channels.setdefault(channel, set()).add(subscription)
        return subscription

    def _unsubscribe(self, subscription: _MemorySubscription) -> None:
        with self._lock:
            subscribers = self._channels.get(subscription.channel)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                # Last subscriber left: tear the channel down
                del self._channels[subscription.channel]

    def publish(self, channel: str, event: QueueEvent) -> int:
        with self._lock:
            subscribers = list(self._channels.get(channel, ()))

        delivered = 0
        for subscription in subscribers:
            if subscription.deliver(event):
                delivered += 1
            else:
                logger.warning(
                    "subscriber_buffer_full_event_dropped",
                    channel=channel,
                    action=event.action,
                )
        return delivered

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def active_channels(self) -> List[str]:
        with self._lock:
            return sorted(self._channels)

    def close(self) -> None:
        with self._lock:
            subscribers = [s for subs in self._channels.values() for s in subs]
            self._channels.clear()
        for subscription in subscribers:
            subscription.closed = True


class _RedisSubscription(Subscription):

    def __init__(self, channel: str, pubsub):
        super().__init__(channel)
        self._pubsub = pubsub

    def get(self, timeout: Optional[float] = None) -> Optional[QueueEvent]:
        message = self._pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout)
        if not message or message.get("type") != "message":
            return None
        return QueueEvent.from_json(message["data"])

    def close(self) -> None:
        if not self.closed:
            super().close()
            self._pubsub.unsubscribe(self.channel)
            self._pubsub.close()


class RedisNotifier(Notifier):
    """Shared-broker notifier over Redis pub/sub (multi-instance deployments)."""

    def __init__(self, redis_url: Optional[str] = None, client=None):
        if client is None:
            if not redis_url:
                raise ValueError(
                    "REDIS_URL environment variable required for the redis notifier. "
                    "Format: redis://host:port/db"
                )
            client = redis.from_url(redis_url, decode_responses=True)
        self.client = client

    def publish(self, channel: str, event: QueueEvent) -> int:
        try:
            return self.client.publish(channel, event.to_json())
        except redis.RedisError as e:
            # The state change is already committed; displays catch up on the next event
            logger.warning("redis_publish_failed", channel=channel, action=event.action, error=str(e))
            return 0

    def subscribe(self, channel: str) -> Subscription:
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(channel)
        return _RedisSubscription(channel, pubsub)

    def close(self) -> None:
        self.client.close()


def create_notifier(settings: config.Settings) -> Notifier:
    """
    Build the notifier selected by NOTIFIER_BACKEND.

    Raises:
        ValueError: Unknown backend, or redis backend without REDIS_URL
    """
    if settings.notifier_backend == "memory":
        return InMemoryNotifier()
    if settings.notifier_backend == "redis":
        return RedisNotifier(redis_url=settings.redis_url)
    raise ValueError(
        f"Unknown NOTIFIER_BACKEND '{settings.notifier_backend}', expected 'memory' or 'redis'"
    )
