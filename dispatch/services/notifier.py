"""Outbound notifications to drivers and customers."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Coroutine, Protocol

from dispatch.utils.logging import get_logger

logger = get_logger(__name__)


class Notifier(ABC):
    """Fire-and-forget delivery of an event to one recipient."""

    @abstractmethod
    async def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        """Send event to the recipient. May raise; callers swallow failures."""


class LoggingNotifier(Notifier):
    """Writes notifications to the log instead of sending them."""

    async def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        logger.info(
            "notification_sent",
            recipient_type=recipient_type,
            recipient_id=recipient_id,
            notification_event=event,
            payload=payload,
        )


class MessageSink(Protocol):
    async def send_to(self, channel: str, message: dict[str, Any]) -> int: ...


class WebSocketNotifier(Notifier):
    """Pushes notifications to websocket subscribers of the recipient.

    Recipients with no open connection are logged and skipped.
    """

    def __init__(self, sink: MessageSink):
        self.sink = sink

    async def notify(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> None:
        channel = f"{recipient_type}:{recipient_id}"
        delivered = await self.sink.send_to(
            channel,
            {"type": "notification", "event": event, "payload": payload},
        )
        if not delivered:
            logger.debug("notification_no_subscribers", channel=channel, notification_event=event)


class NotificationTasks:
    """Tracks notification deliveries running in the background."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every pending delivery, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
