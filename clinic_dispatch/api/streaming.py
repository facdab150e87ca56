"""Server-Sent Events streaming utilities."""
import asyncio
from typing import AsyncGenerator, Optional

from clinic_dispatch import config
from clinic_dispatch.logging_config import get_logger
from clinic_dispatch.notifier import Subscription

logger = get_logger(__name__)


def format_sse(data: str, event: Optional[str] = None) -> str:
    """Frame one SSE message."""
    lines = []
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in data.splitlines() or [""])
    return "\n".join(lines) + "\n\n"


async def stream_queue_events(
    subscription: Subscription,
    keepalive_seconds: float = config.STREAM_KEEPALIVE_SECONDS,
    poll_timeout: float = 1.0,
    max_events: Optional[int] = None
) -> AsyncGenerator[str, None]:
    """
    Stream notifier events for one channel as Server-Sent Events.

    Yields:
    - ``: connected <channel>`` comment once the subscription is live
    - ``event: <action>`` / ``data: {json}`` per queue event
    - ``: keep-alive`` comment after ``keepalive_seconds`` of silence

    The blocking ``subscription.get`` runs in a worker thread so the event
    loop stays free. The subscription is closed when the client goes away
    (generator cancelled) or after ``max_events`` events.

    Args:
        subscription: Live notifier subscription (ownership is taken)
        keepalive_seconds: Idle time before a keep-alive comment
        poll_timeout: Seconds per blocking poll
        max_events: Stop after this many events (None = until disconnect)
    """
    sent = 0
    idle = 0.0
    try:
        yield f": connected {subscription.channel}\n\n"
        while not subscription.closed:
            event = await asyncio.to_thread(subscription.get, poll_timeout)
            if event is None:
                idle += poll_timeout
                if idle >= keepalive_seconds:
                    idle = 0.0
                    yield ": keep-alive\n\n"
                continue

            idle = 0.0
            yield format_sse(event.to_json(), event=event.action)
            sent += 1
            if max_events is not None and sent >= max_events:
                break
    finally:
        subscription.close()
        logger.debug("event_stream_closed", channel=subscription.channel, events_sent=sent)
