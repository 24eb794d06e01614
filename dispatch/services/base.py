"""Base service class with functionality shared by the engine components."""

import asyncio
from typing import Any

from dispatch.config import Settings, get_settings
from dispatch.services.notifier import LoggingNotifier, Notifier, NotificationTasks
from dispatch.utils.clock import Clock, SystemClock
from dispatch.utils.logging import DispatchLogger


class BaseService:
    """Holds settings, clock, notifier and a component logger."""

    def __init__(
        self,
        component: str,
        settings: Settings | None = None,
        clock: Clock | None = None,
        notifier: Notifier | None = None,
        notifications: NotificationTasks | None = None,
    ):
        self.component = component
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotifier()
        self.notifications = notifications or NotificationTasks()
        self.logger = DispatchLogger(component)

    async def notify(
        self,
        recipient_type: str,
        recipient_id: Any,
        event: str,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Best-effort notification; failures are logged and never raised.

        With notify_in_background the delivery runs as a tracked task and the
        caller does not wait for it.
        """
        delivery = self._deliver(recipient_type, str(recipient_id), event, payload or {})
        if self.settings.notify_in_background:
            self.notifications.spawn(delivery)
        else:
            await delivery

    async def _deliver(
        self,
        recipient_type: str,
        recipient_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> bool:
        try:
            await asyncio.wait_for(
                self.notifier.notify(recipient_type, recipient_id, event, payload),
                timeout=self.settings.notification_timeout_seconds,
            )
            return True

        except asyncio.TimeoutError:
            self.logger.log_notification_failure(recipient_type, recipient_id, event, "timed out")
        except Exception as e:
            self.logger.log_notification_failure(recipient_type, recipient_id, event, str(e))
        return False
